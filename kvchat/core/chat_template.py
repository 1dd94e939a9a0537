"""
kvchat :: Chat Template

Render chat messages into a prompt string with Jinja2.
Models ship their own template next to config.json; otherwise the
phi-3 layout is used:

    <|system|>
    You are a friendly assistant.<|end|>
    <|user|>
    {query}<|end|>
    <|assistant|>

INL - 2025
"""

import os
from typing import Dict, List, Optional

from kvchat.core.logging import get_logger

logger = get_logger("kvchat.template")

PHI3_TEMPLATE = (
    "{% for message in messages %}"
    "<|{{ message['role'] }}|>\n{{ message['content'] }}<|end|>\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|assistant|>\n{% endif %}"
)


class ChatTemplate:
    """Chat template renderer over a Jinja2 template string."""

    def __init__(self, template_str: str):
        from jinja2 import Template
        self.source = template_str
        self.template = Template(template_str, keep_trailing_newline=True)

    def apply(
        self,
        messages: List[Dict[str, str]],
        add_generation_prompt: bool = True,
    ) -> str:
        """
        Render messages into a prompt string.

        Args:
            messages: [{"role": "user", "content": "..."}, ...]
            add_generation_prompt: append assistant turn marker
        """
        return self.template.render(
            messages=messages,
            add_generation_prompt=add_generation_prompt,
        )

    @staticmethod
    def from_file(path: str) -> "ChatTemplate":
        """Load template from a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(f.read())

    @staticmethod
    def default() -> "ChatTemplate":
        return ChatTemplate(PHI3_TEMPLATE)


def load_chat_template(model_dir: str) -> Optional[ChatTemplate]:
    """Find chat_template.jinja (or .j2) in a model directory."""
    for name in ("chat_template.jinja", "chat_template.j2", "template.jinja"):
        path = os.path.join(model_dir, name)
        if os.path.exists(path):
            logger.info(f"chat_template: {path}")
            return ChatTemplate.from_file(path)
    return None

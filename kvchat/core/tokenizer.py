"""
kvchat :: Tokenizer

Load tokenizer.json from a model directory.
Wraps HuggingFace tokenizers for text <-> i64 conversion.

INL - 2025
"""

import os
from typing import List, Optional, Sequence

from kvchat.core.errors import ConfigurationError
from kvchat.core.logging import get_logger

logger = get_logger("kvchat.tokenizer")


class ChatTokenizer:
    """
    Tokenizer wrapper.

    Input:  text (str)
    Output: token IDs (List[int], i64)

    Uses tokenizers library (HuggingFace fast tokenizer).
    """

    def __init__(self, tokenizer_path: str):
        from tokenizers import Tokenizer

        self.path = tokenizer_path
        self.tokenizer = Tokenizer.from_file(tokenizer_path)

    def encode(self, text: str) -> List[int]:
        """Text → i64 token IDs (special tokens added as the tokenizer defines)."""
        return self.tokenizer.encode(text).ids

    def decode(self, token_ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        """i64 token IDs → text."""
        return self.tokenizer.decode(list(token_ids), skip_special_tokens=skip_special_tokens)

    def token_id(self, token: str) -> Optional[int]:
        """Id of a single vocabulary entry, or None."""
        return self.tokenizer.token_to_id(token)

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()


def load_tokenizer(model_dir: str) -> ChatTokenizer:
    """
    Load the tokenizer for a model directory.

    Looks for tokenizer.json in the directory, then its parent.
    """
    for candidate in (
        os.path.join(model_dir, "tokenizer.json"),
        os.path.join(os.path.dirname(os.path.abspath(model_dir)), "tokenizer.json"),
    ):
        if os.path.exists(candidate):
            logger.info(f"tokenizer: {candidate}")
            return ChatTokenizer(candidate)

    raise ConfigurationError(f"tokenizer.json not found in {model_dir}")

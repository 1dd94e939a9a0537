"""
kvchat :: Chat Session

Session lifecycle around one decoding engine:

  load()    config.json + tokenizer + chat template + ONNX session, once
  query()   template -> encode -> reset cache -> generate -> decode
  abort()   stop the reply in progress

Every query starts from a freshly reset cache, so nothing from a previous
turn (or a previous retrieval sub-query) bleeds into the next one.

INL - 2025
"""

import os
import time
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence

from kvchat.core.chat_template import ChatTemplate, load_chat_template
from kvchat.core.config import EngineConfig, ModelConfig, SessionOptions
from kvchat.core.logging import get_logger
from kvchat.core.tokenizer import load_tokenizer
from kvchat.engine.decoder import CancellationToken, DecodingEngine
from kvchat.engine.executor import OnnxStepExecutor

logger = get_logger("kvchat.session")


@dataclass
class ChatReply:
    """One assistant reply with timing."""
    text: str
    prompt_tokens: int
    completion_tokens: int
    finish_reason: str
    first_token_s: Optional[float]
    elapsed_s: float

    @property
    def tokens_per_sec(self) -> float:
        return self.completion_tokens / self.elapsed_s if self.elapsed_s > 0 else 0.0

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["tokens_per_sec"] = round(self.tokens_per_sec, 2)
        return d


def _model_size_bytes(model_path: str) -> int:
    size = os.path.getsize(model_path)
    external = f"{model_path}_data"
    if os.path.exists(external):
        size += os.path.getsize(external)
    return size


class ChatSession:
    """
    A loaded model ready to answer queries.

    Usage:
        session = ChatSession.load("models/phi3")
        reply = session.query("Tell me about the lighthouse of Alexandria.")
        print(reply.text)
        session.close()
    """

    def __init__(
        self,
        engine: DecodingEngine,
        tokenizer,
        template: Optional[ChatTemplate] = None,
        options: Optional[SessionOptions] = None,
        model_name: str = "model",
    ):
        self.engine = engine
        self.tokenizer = tokenizer
        self.template = template or ChatTemplate.default()
        self.options = options or SessionOptions()
        self.model_name = model_name
        self._context: str = ""
        self._cancel: Optional[CancellationToken] = None

    @classmethod
    def load(cls, model_dir: str, options: Optional[SessionOptions] = None) -> "ChatSession":
        """Load config, tokenizer, template and executor; reset the cache once."""
        options = options or SessionOptions()
        model_dir = os.path.abspath(model_dir)
        model_name = os.path.basename(model_dir)
        logger.info(f"loading... {model_name}, {options.provider}")

        model_config = ModelConfig.from_json(os.path.join(model_dir, "config.json"))
        tokenizer = load_tokenizer(model_dir)
        template = load_chat_template(model_dir) or ChatTemplate.default()

        model_path = os.path.join(model_dir, options.model_file)
        executor = OnnxStepExecutor(
            model_path,
            provider=options.provider,
            output_location=options.cache_placement,
            profiling=options.profiler,
            verbose=options.verbose,
            intra_op_num_threads=options.threads,
        )
        logger.info(f"model size {round(_model_size_bytes(model_path) / 1024 / 1024)} MB, dtype {options.dtype}")

        extra = options.additional_terminal_ids
        if extra is None:
            end_id = tokenizer.token_id("<|end|>")
            extra = [end_id] if end_id is not None else []

        engine_config = EngineConfig.for_model(
            model_config,
            additional_terminal_ids=list(extra),
            max_tokens=options.max_tokens,
            need_position_ids=executor.need_position_ids,
            cache_placement=options.cache_placement,
            profiling=options.profiler,
            dtype=options.dtype,
        )
        engine = DecodingEngine(executor, model_config, engine_config)
        engine.reset_conversation()
        return cls(engine, tokenizer, template, options, model_name=model_name)

    # ---------------------------------------------------------------------
    # Document context (text extracted elsewhere)
    # ---------------------------------------------------------------------

    def attach_context(self, text: str):
        """Prepend text to every following query."""
        self._context = text.strip()

    def clear_context(self):
        self._context = ""

    @property
    def has_context(self) -> bool:
        return bool(self._context)

    # ---------------------------------------------------------------------
    # Prompt building
    # ---------------------------------------------------------------------

    def build_prompt(self, query: str, continuation: bool = False) -> List[int]:
        """
        Token ids for a user query.

        continuation=True feeds the text verbatim (no chat template).
        """
        if continuation:
            return self.tokenizer.encode(self._with_context(query))
        return self.encode_messages([{"role": "user", "content": query}])

    def _with_context(self, text: str) -> str:
        return f"{self._context}\n\n{text}" if self._context else text

    def encode_messages(self, messages: List[Dict[str, str]]) -> List[int]:
        """
        Chat messages -> token ids.

        Adds the system prompt if absent; attached context goes in front of
        the last user message.
        """
        messages = list(messages)
        if self._context:
            for i in range(len(messages) - 1, -1, -1):
                if messages[i].get("role") == "user":
                    messages[i] = dict(messages[i], content=self._with_context(messages[i]["content"]))
                    break
        if not messages or messages[0].get("role") != "system":
            messages = [{"role": "system", "content": self.options.system_prompt}] + list(messages)
        return self.tokenizer.encode(self.template.apply(messages))

    def decode_reply(self, output_tokens: Sequence[int], start: int) -> str:
        return self.tokenizer.decode(
            list(output_tokens[start:]),
            skip_special_tokens=not self.options.show_special,
        )

    # ---------------------------------------------------------------------
    # Turns
    # ---------------------------------------------------------------------

    def query(self, text: str, continuation: bool = False, max_tokens: Optional[int] = None) -> ChatReply:
        """Answer one query from a fresh conversation state."""
        input_ids = self.build_prompt(text, continuation)
        return self.complete(input_ids, max_tokens)

    def complete(self, input_ids: Sequence[int], max_tokens: Optional[int] = None) -> ChatReply:
        """Generate a reply for already-encoded prompt tokens."""
        cancel = self._cancel = CancellationToken()
        self.engine.reset_conversation()

        start_timer = time.perf_counter()
        output_index = len(self.engine.output_tokens) + len(input_ids)
        first_token_s: List[float] = []

        def _on_progress(output_tokens: List[int]):
            if len(output_tokens) == output_index + 1:
                took = time.perf_counter() - start_timer
                first_token_s.append(took)
                logger.info(f"time to first token in {took:.1f}sec, {len(input_ids)} tokens")

        budget = self.options.max_tokens if max_tokens is None else max_tokens
        output_tokens = self.engine.generate(input_ids, _on_progress, budget, cancel=cancel)

        took = time.perf_counter() - start_timer
        seqlen = len(output_tokens) - output_index
        reply = ChatReply(
            text=self.decode_reply(output_tokens, output_index),
            prompt_tokens=len(input_ids),
            completion_tokens=seqlen,
            finish_reason=self.engine.last_stats.finish_reason,
            first_token_s=first_token_s[0] if first_token_s else None,
            elapsed_s=took,
        )
        logger.info(f"{seqlen} tokens in {took:.1f}sec, {reply.tokens_per_sec:.2f} tokens/sec")
        return reply

    def abort(self):
        """Stop the reply in progress (safe from a signal handler)."""
        if self._cancel is not None:
            self._cancel.cancel()

    def close(self):
        self.engine.close()

    @property
    def model_info(self) -> Dict:
        cfg = self.engine.model_config
        return {
            "name": self.model_name,
            "num_layers": cfg.num_hidden_layers,
            "num_kv_heads": cfg.num_key_value_heads,
            "head_dim": cfg.head_dim,
            "kv_dims": list(cfg.kv_dims),
            "eos_token_ids": list(self.engine.config.eos_token_ids),
            "terminal_ids": sorted(self.engine.config.terminal_ids),
            "cache_placement": self.engine.config.cache_placement.value,
            "dtype": self.engine.config.dtype,
        }

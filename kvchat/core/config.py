"""
kvchat :: Config

Model config (mirrors the checkpoint's config.json) and the engine /
session settings layered on top of it.

Only the fields the decoder needs are read from config.json; unknown
keys are ignored.

INL - 2025
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from kvchat.core.errors import ConfigurationError
from kvchat.core.tensors import Location


@dataclass
class ModelConfig:
    """
    Causal LM config.
    Mirrors config.json of an ONNX-exported decoder (phi-3 style).
    """
    # Dimensions
    num_hidden_layers: int = 32
    num_attention_heads: int = 32
    num_key_value_heads: int = 32
    hidden_size: int = 3072
    vocab_size: int = 32064

    # Positions
    max_position_embeddings: int = 4096

    # Token IDs (config.json may hold an int or a list)
    eos_token_id: List[int] = field(default_factory=lambda: [2])
    bos_token_id: Optional[int] = 1
    pad_token_id: Optional[int] = None

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @property
    def kv_dims(self) -> Tuple[int, int, int, int]:
        """Empty cache shape: [1, num_kv_heads, 0, head_dim]."""
        return (1, self.num_key_value_heads, 0, self.head_dim)

    def validate(self) -> "ModelConfig":
        """Raise ConfigurationError on values the decoder cannot use."""
        for name in ("num_hidden_layers", "num_attention_heads", "num_key_value_heads", "hidden_size"):
            val = getattr(self, name)
            if not isinstance(val, int) or isinstance(val, bool) or val <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {val!r}")
        if self.hidden_size % self.num_attention_heads != 0:
            raise ConfigurationError(
                f"hidden_size ({self.hidden_size}) is not divisible by "
                f"num_attention_heads ({self.num_attention_heads})"
            )
        if not self.eos_token_id:
            raise ConfigurationError("eos_token_id must name at least one token")
        for tid in self.eos_token_id:
            if not isinstance(tid, int) or isinstance(tid, bool) or tid < 0:
                raise ConfigurationError(f"eos_token_id entries must be token ids, got {tid!r}")
        return self

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ModelConfig":
        config = ModelConfig()
        for key, val in data.items():
            if key == "eos_token_id":
                val = [val] if isinstance(val, int) else list(val or [])
            if key in ModelConfig.__dataclass_fields__:
                setattr(config, key, val)
        # Older exports omit num_key_value_heads (no GQA)
        if "num_key_value_heads" not in data and "num_attention_heads" in data:
            config.num_key_value_heads = config.num_attention_heads
        return config.validate()

    @staticmethod
    def from_json(path: str) -> "ModelConfig":
        """Load from a checkpoint config.json."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"config.json not found: {path}") from None
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"config.json is not valid JSON ({path}): {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"config.json must hold an object, got {type(data).__name__}")
        return ModelConfig.from_dict(data)


@dataclass
class EngineConfig:
    """Decoding engine settings: stop ids, budget, placement."""
    eos_token_ids: List[int] = field(default_factory=lambda: [2])
    # Model-specific terminal ids beyond eos (e.g. phi-3 <|end|> = 32007)
    additional_terminal_ids: List[int] = field(default_factory=list)
    max_tokens: int = 256
    need_position_ids: bool = True
    cache_placement: Location = Location.HOST
    profiling: bool = False
    dtype: str = "float16"

    @property
    def terminal_ids(self) -> frozenset:
        return frozenset(self.eos_token_ids) | frozenset(self.additional_terminal_ids)

    def validate(self) -> "EngineConfig":
        if self.max_tokens < 1:
            raise ConfigurationError(f"max_tokens must be >= 1, got {self.max_tokens}")
        self.cache_placement = Location(self.cache_placement)
        return self

    @staticmethod
    def for_model(model_config: ModelConfig, **overrides) -> "EngineConfig":
        """Engine config seeded with the model's eos ids."""
        cfg = EngineConfig(eos_token_ids=list(model_config.eos_token_id))
        for key, val in overrides.items():
            if key not in EngineConfig.__dataclass_fields__:
                raise ConfigurationError(f"Unknown engine option: {key}")
            setattr(cfg, key, val)
        return cfg.validate()


@dataclass
class SessionOptions:
    """Chat session options (CLI flags map onto these)."""
    provider: str = "cuda"              # onnxruntime provider: cuda, dml, cpu
    profiler: bool = False
    verbose: bool = False
    threads: int = 1
    fp16: bool = True
    show_special: bool = False
    max_tokens: int = 9999
    model_file: str = "model_q4f16.onnx"
    system_prompt: str = "You are a friendly assistant."
    cache_placement: Location = Location.HOST
    additional_terminal_ids: Optional[List[int]] = None   # None: derive from tokenizer

    @property
    def dtype(self) -> str:
        # The CPU provider has no fp16 kernels for the cache inputs
        if self.provider == "cpu" or not self.fp16:
            return "float32"
        return "float16"

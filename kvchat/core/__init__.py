"""
kvchat :: Core

Building blocks of the decoder, independent of any executor.
  - errors: ConfigurationError / ExecutionError / NumericalError
  - tensors: location-tagged tensors with explicit release
  - kv_cache: per-layer cache + feed table
  - sampling: greedy argmax over the last position
  - config: model / engine / session settings
  - tokenizer, chat_template: text <-> prompt tokens
"""

from kvchat.core.errors import KVChatError, ConfigurationError, ExecutionError, NumericalError
from kvchat.core.tensors import Location, ResidentTensor, live_accelerator_tensors
from kvchat.core.kv_cache import CacheStore
from kvchat.core.sampling import argmax
from kvchat.core.config import ModelConfig, EngineConfig, SessionOptions

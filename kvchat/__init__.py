"""
kvchat: Client-side chat agent over an incremental KV-cache decoder.

The philosophy: one stream, one cache, nothing leaked.

  Tokens:      i64 (prompt + greedy continuation)
  Feed:        explicit table owned by the cache store
  KV cache:    2 tensors per layer, host or accelerator resident
  Sampling:    greedy argmax over the last position
  Compute:     ONNX Runtime session (the ONLY opaque step)

INL - 2025
"""

__version__ = "0.1.0"

"""
kvchat :: Decode Loop Benchmark

Measures the engine's own overhead per step (feed building, argmax,
cache swap, release) with a scripted executor, so no model is needed:
  - ms per decode step
  - tokens/sec
  - cache growth with host vs accelerator placement

INL - 2025
"""

import time
from typing import Dict

import torch

from kvchat.core.config import EngineConfig, ModelConfig
from kvchat.core.tensors import Location
from kvchat.engine.decoder import DecodingEngine
from kvchat.engine.executor import ScriptedStepExecutor


def bench_decode(
    num_layers: int = 4,
    new_tokens: int = 128,
    prompt_len: int = 32,
    num_kv_heads: int = 4,
    head_dim: int = 16,
    vocab_size: int = 32064,
    placement: str = "host",
    n_iters: int = 3,
) -> Dict:
    """Greedy decode new_tokens tokens, no eos. Returns timing per step."""
    model_config = ModelConfig(
        num_hidden_layers=num_layers,
        num_attention_heads=num_kv_heads,
        num_key_value_heads=num_kv_heads,
        hidden_size=num_kv_heads * head_dim,
        vocab_size=vocab_size,
        eos_token_id=[vocab_size - 1],
    )
    location = Location(placement)
    executor = ScriptedStepExecutor(
        num_layers=num_layers,
        kv_dims=model_config.kv_dims,
        vocab_size=vocab_size,
        script=lambda step, fed: (step * 7 + 3) % (vocab_size - 1),
        output_location=location,
    )
    config = EngineConfig.for_model(model_config, cache_placement=location, dtype="float32")
    engine = DecodingEngine(executor, model_config, config)

    prompt = torch.randint(0, vocab_size - 1, (prompt_len,)).tolist()
    budget = prompt_len + new_tokens

    # Warmup
    engine.reset_conversation()
    engine.generate(prompt, max_tokens=prompt_len + 2)

    start = time.perf_counter()
    for _ in range(n_iters):
        engine.reset_conversation()
        engine.generate(prompt, max_tokens=budget)
    elapsed = time.perf_counter() - start

    steps = new_tokens * n_iters
    return {
        "placement": placement,
        "tokens": new_tokens,
        "ms_per_step": round(elapsed / steps * 1000, 3),
        "tokens_per_sec": int(steps / elapsed),
    }


if __name__ == "__main__":
    for placement in ("host", "accelerator"):
        for layers in (4, 16, 32):
            r = bench_decode(num_layers=layers, placement=placement)
            print(f"{placement:<12} layers={layers:<3} {r['ms_per_step']:>8} ms/step  {r['tokens_per_sec']:>8} tok/s")

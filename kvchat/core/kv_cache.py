"""
kvchat :: KV Cache Store

Per-layer key/value cache for a single generation stream.

The store owns the whole feed table:
  - cache entries:  past_key_values.{i}.key / past_key_values.{i}.value
  - input entries:  input_ids, position_ids, attention_mask

Feed entries for the cache ARE the cache entries (same object, never
copied), so swapping a cache slot updates what the next step sees.

Lifecycle:
  reset()    release everything, fill num_layers * 2 empty host entries
  replace()  swap one cache slot, releasing the old accelerator tensor
  clear()    release every accelerator tensor, drop the whole table

INL - 2025
"""

from typing import Dict, List, Mapping, Optional, Sequence

import torch

from kvchat.core.errors import ConfigurationError
from kvchat.core.logging import get_logger
from kvchat.core.tensors import Location, ResidentTensor, empty_cache_tensor

logger = get_logger("kvchat.cache")

PAST_PREFIX = "past_key_values"
PRESENT_PREFIX = "present"


def cache_name(layer: int, kind: str) -> str:
    """Cache slot name for layer / kind ('key' or 'value')."""
    return f"{PAST_PREFIX}.{layer}.{kind}"


def present_to_past(name: str) -> Optional[str]:
    """Map an executor output name to its cache slot, or None if not present-state."""
    if not name.startswith(PRESENT_PREFIX):
        return None
    return PAST_PREFIX + name[len(PRESENT_PREFIX):]


class CacheStore:
    """
    KV cache + input feed for one decoding engine.

    Memory layout per entry: [1, num_kv_heads, seq, head_dim]. After reset
    seq is 0; each step the executor returns present tensors one position
    longer, which replace the past entries wholesale.

    placement is the location every replacement must have. Fresh entries
    from reset() are always host resident (they hold no data).
    """

    def __init__(self, placement: Location = Location.HOST):
        self.placement = Location(placement)
        self._cache: Dict[str, ResidentTensor] = {}
        self._inputs: Dict[str, ResidentTensor] = {}

        # Integer counters
        self.num_resets: int = 0
        self.num_replaced: int = 0
        self.num_released: int = 0

    # ---------------------------------------------------------------------
    # Introspection
    # ---------------------------------------------------------------------

    def __len__(self) -> int:
        """Live cache entries (2 per layer while a stream is active)."""
        return len(self._cache)

    def __contains__(self, name: str) -> bool:
        return name in self._cache or name in self._inputs

    @property
    def num_accelerator(self) -> int:
        """Live accelerator-resident tensors across cache and inputs."""
        return sum(
            1 for t in list(self._cache.values()) + list(self._inputs.values())
            if t.is_accelerator and not t.released
        )

    def cache_names(self) -> List[str]:
        return list(self._cache.keys())

    def names(self) -> List[str]:
        """Every feed name: inputs first, then cache slots."""
        return list(self._inputs.keys()) + list(self._cache.keys())

    @property
    def seq_len(self) -> int:
        """Sequence extent currently held by the cache (0 after reset)."""
        for t in self._cache.values():
            return t.shape[2]
        return 0

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    def reset(self, num_layers: int, dims: Sequence[int], dtype: torch.dtype):
        """
        Drop all state and (re)populate num_layers * 2 empty entries.

        Args:
            num_layers: transformer layer count
            dims: [1, num_kv_heads, 0, head_dim]
            dtype: cache dtype (float16 / float32)
        """
        if num_layers <= 0:
            raise ConfigurationError(f"num_layers must be > 0, got {num_layers}")
        dims = list(dims)
        if len(dims) != 4 or dims[0] != 1 or dims[2] != 0:
            raise ConfigurationError(f"cache dims must be [1, heads, 0, head_dim], got {dims}")

        self.clear()
        for i in range(num_layers):
            for kind in ("key", "value"):
                self._cache[cache_name(i, kind)] = empty_cache_tensor(dims, dtype)
        self.num_resets += 1
        logger.debug(f"Cache reset: {num_layers} layers, dims={dims}, dtype={dtype}")

    def replace(self, name: str, new_tensor: ResidentTensor):
        """
        Swap cache slot `name` for `new_tensor`, taking ownership of it.

        The previous entry is released if accelerator resident. A tensor
        whose location does not match the placement policy is rejected
        (and released, since ownership was already handed over).
        """
        if name not in self._cache:
            new_tensor.release()
            raise ConfigurationError(f"Unknown cache slot: {name}")
        if new_tensor.location is not self.placement:
            new_tensor.release()
            raise ConfigurationError(
                f"Cache slot {name} expects {self.placement.value} placement, "
                f"executor returned {new_tensor.location.value}"
            )

        old = self._cache[name]
        self._cache[name] = new_tensor
        if old is not new_tensor and old.release():
            self.num_released += 1
        self.num_replaced += 1

    def update_from_outputs(self, outputs: Mapping[str, ResidentTensor]) -> List[str]:
        """
        Move every present-state output into its cache slot.

        Returns the output names that were consumed; the caller still owns
        the rest (e.g. logits).
        """
        consumed = []
        for name, tensor in outputs.items():
            slot = present_to_past(name)
            if slot is None:
                continue
            self.replace(slot, tensor)
            consumed.append(name)
        return consumed

    def clear(self):
        """Release every accelerator tensor, then empty the feed table."""
        for table in (self._inputs, self._cache):
            for t in table.values():
                if t.is_accelerator and t.release():
                    self.num_released += 1
            table.clear()

    # ---------------------------------------------------------------------
    # Feed access
    # ---------------------------------------------------------------------

    def get(self, name: str) -> ResidentTensor:
        if name in self._cache:
            return self._cache[name]
        if name in self._inputs:
            return self._inputs[name]
        raise KeyError(name)

    def set_input(self, name: str, tensor: ResidentTensor):
        """Install a non-cache feed entry (input_ids, position_ids, attention_mask)."""
        if name in self._cache:
            raise ConfigurationError(f"{name} is a cache slot, use replace()")
        old = self._inputs.get(name)
        self._inputs[name] = tensor
        if old is not None and old is not tensor and old.release():
            self.num_released += 1

    def feed(self) -> Dict[str, ResidentTensor]:
        """
        Snapshot of the feed table for one executor call.

        The dict is new, the tensors are the store's own (by reference).
        """
        table = dict(self._inputs)
        table.update(self._cache)
        return table

    def get_stats(self) -> Dict[str, int]:
        """Cache stats: all integers."""
        return {
            "cache_entries": len(self._cache),
            "input_entries": len(self._inputs),
            "accelerator_entries": self.num_accelerator,
            "cache_seq_len": self.seq_len,
            "num_resets": self.num_resets,
            "num_replaced": self.num_replaced,
            "num_released": self.num_released,
        }

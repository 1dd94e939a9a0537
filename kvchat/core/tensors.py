"""
kvchat :: Resident Tensors

Ownership-tracking wrapper around torch tensors.

Every tensor that crosses the executor boundary carries an explicit
storage location tag:

  host:         general memory, reclaimed by the garbage collector
  accelerator:  device memory, must be released explicitly

ResidentTensor.release() is the single place accelerator storage is
given back. It is idempotent, so a tensor can never be freed twice.
A process-wide counter of live accelerator tensors makes leaks visible.

INL - 2025
"""

import threading
from enum import Enum
from typing import Optional, Sequence, Tuple

import torch

from kvchat.core.errors import ConfigurationError


class Location(str, Enum):
    HOST = "host"
    ACCELERATOR = "accelerator"


_live_lock = threading.Lock()
_live_accelerator: int = 0


def live_accelerator_tensors() -> int:
    """Number of accelerator tensors created and not yet released."""
    return _live_accelerator


def _track(delta: int):
    global _live_accelerator
    with _live_lock:
        _live_accelerator += delta


class ResidentTensor:
    """
    A torch tensor with a location tag and an explicit release.

    Owned by exactly one of: a cache slot, the pending-input feed,
    or a pending-output set. Ownership moves, it is never shared.
    """

    __slots__ = ("_data", "location")

    def __init__(self, data: torch.Tensor, location: Location = Location.HOST):
        self._data: Optional[torch.Tensor] = data
        self.location = Location(location)
        if self.location is Location.ACCELERATOR:
            _track(1)

    @property
    def data(self) -> torch.Tensor:
        if self._data is None:
            raise RuntimeError("tensor used after release")
        return self._data

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def is_accelerator(self) -> bool:
        return self.location is Location.ACCELERATOR

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def dtype(self) -> torch.dtype:
        return self.data.dtype

    def release(self) -> bool:
        """
        Give the storage back.

        Returns True if this call freed accelerator storage, False if the
        tensor was host resident or already released.
        """
        if self._data is None:
            return False
        self._data = None
        if self.location is Location.ACCELERATOR:
            _track(-1)
            return True
        return False

    def __repr__(self) -> str:
        if self._data is None:
            return f"ResidentTensor(<released>, {self.location.value})"
        return f"ResidentTensor(shape={list(self._data.shape)}, dtype={self._data.dtype}, {self.location.value})"


# =========================================================================
# Feed builders (always host resident, int64)
# =========================================================================

def token_tensor(token_ids: Sequence[int]) -> ResidentTensor:
    """[1, n] int64 tensor of token ids."""
    return ResidentTensor(torch.tensor([list(token_ids)], dtype=torch.int64))


def position_tensor(start: int, length: int) -> ResidentTensor:
    """[1, length] int64 positions start .. start + length - 1."""
    return ResidentTensor(torch.arange(start, start + length, dtype=torch.int64).unsqueeze(0))


def attention_mask_tensor(length: int) -> ResidentTensor:
    """[1, length] int64 all-ones mask: every prior position is attended."""
    return ResidentTensor(torch.ones(1, length, dtype=torch.int64))


def empty_cache_tensor(dims: Sequence[int], dtype: torch.dtype) -> ResidentTensor:
    """Host tensor with zero-extent sequence axis, e.g. [1, heads, 0, head_dim]."""
    return ResidentTensor(torch.empty(*dims, dtype=dtype))


_DTYPES = {
    "float16": torch.float16,
    "fp16": torch.float16,
    "bfloat16": torch.bfloat16,
    "bf16": torch.bfloat16,
    "float32": torch.float32,
    "fp32": torch.float32,
}


def dtype_from_str(name: str) -> torch.dtype:
    """'float16' / 'fp16' / 'float32' ... -> torch dtype."""
    try:
        return _DTYPES[name.lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown dtype: {name}. Available: {', '.join(sorted(_DTYPES))}") from None

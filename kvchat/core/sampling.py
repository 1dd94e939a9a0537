"""
kvchat :: Sampling

Greedy token selection. Output is always an integer token id.

Only the last position of the logits is considered: the cache already
covers every earlier position, so those rows are stale predictions.

Ties go to the lowest index (torch.argmax returns the first maximal
value), which keeps decoding byte-for-byte reproducible.

INL - 2025
"""

import torch

from kvchat.core.errors import ExecutionError, NumericalError
from kvchat.core.tensors import ResidentTensor


def last_position_logits(logits: torch.Tensor) -> torch.Tensor:
    """
    (1, seq, vocab) -> (vocab,) row for position seq - 1.

    Raises ExecutionError if the executor produced a malformed shape.
    """
    if logits.dim() != 3 or logits.shape[0] != 1:
        raise ExecutionError(f"logits must be [1, seq, vocab], got {list(logits.shape)}")
    if logits.shape[1] == 0 or logits.shape[2] == 0:
        raise ExecutionError(f"logits have an empty axis: {list(logits.shape)}")
    return logits[0, -1]


def argmax(logits) -> int:
    """
    Greedy next token.

    Args:
        logits: (1, seq, vocab) torch tensor or ResidentTensor

    Returns:
        token_id: int (i64), lowest index among equal maxima

    Raises:
        NumericalError: a scanned value is NaN or infinite
    """
    if isinstance(logits, ResidentTensor):
        logits = logits.data
    row = last_position_logits(logits).float()

    finite = torch.isfinite(row)
    if not bool(finite.all()):
        bad = int((~finite).nonzero()[0].item())
        raise NumericalError(f"non-finite logit {row[bad].item()} at vocab index {bad}")

    return int(row.argmax().item())

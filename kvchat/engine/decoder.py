"""
kvchat :: Decoding Engine

Autoregressive greedy decoding over an incremental KV cache.

Control flow:
    prime:  input_ids = prompt, position_ids = [prior .. prior + n)
    while last not terminal and len(output) < max_tokens and not cancelled:
        attention_mask = ones(len(output))
        outputs = executor.run(cache.feed())     # the ONLY suspension point
        token = argmax(outputs.logits)           # i64
        output.append(token); callback(output)
        cache.update_from_outputs(outputs)       # present -> past
        input_ids = [token], position_ids = [len before step]
    cleanup: release accelerator tensors, clear the feed (every exit path)

States: IDLE -> PRIMING -> STEPPING -> COMPLETED | ABORTED | FAILED -> IDLE

Two modes:
  - DecodingEngine: synchronous, one generate() in flight per instance
  - AsyncDecodingEngine: asyncio front-end, serialises callers with a lock

INL - 2025
"""

import asyncio
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from kvchat.core.config import EngineConfig, ModelConfig
from kvchat.core.errors import ConfigurationError
from kvchat.core.kv_cache import CacheStore
from kvchat.core.logging import TurnLogger, get_logger
from kvchat.core.sampling import argmax
from kvchat.core.tensors import attention_mask_tensor, dtype_from_str, position_tensor, token_tensor
from kvchat.engine.executor import StepExecutor, decoder_input_names

logger = get_logger("kvchat.engine")

ProgressCallback = Callable[[List[int]], None]


class DecodeState(str, Enum):
    IDLE = "idle"
    PRIMING = "priming"
    STEPPING = "stepping"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class CancellationToken:
    """
    Cooperative stop flag, checked once per step. Safe to set from any thread.

    One token per generate() call. A token is never reset: once cancelled
    it stays cancelled, so a caller can cancel before the engine has even
    started priming and the call still stops at its first check.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class GenerationStats:
    """Outcome of one generate() call. Counts are integers."""
    turn_id: int
    prompt_tokens: int
    generated_tokens: int
    num_steps: int
    finish_reason: str            # "stop", "length", "cancelled", "error"
    first_token_ms: Optional[float]
    elapsed_ms: float

    @property
    def tokens_per_sec(self) -> float:
        if self.elapsed_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.elapsed_ms / 1000)

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["tokens_per_sec"] = round(self.tokens_per_sec, 2)
        return d


class DecodingEngine:
    """
    Greedy decoder for one conversation stream.

    Owns the cache store; the executor is borrowed. The caller resets the
    conversation (reset_conversation) before each independent turn, since
    every generate() call ends by releasing the cache.
    """

    def __init__(
        self,
        executor: StepExecutor,
        model_config: ModelConfig,
        config: Optional[EngineConfig] = None,
        cache: Optional[CacheStore] = None,
    ):
        self.executor = executor
        self.model_config = model_config
        self.config = (config or EngineConfig.for_model(model_config)).validate()
        self.cache = cache if cache is not None else CacheStore(placement=self.config.cache_placement)
        self.dtype = dtype_from_str(self.config.dtype)

        if self.cache.placement is not self.config.cache_placement:
            raise ConfigurationError(
                f"cache store placement {self.cache.placement.value} does not match "
                f"engine placement {self.config.cache_placement.value}"
            )
        if executor.output_location is not self.config.cache_placement:
            raise ConfigurationError(
                f"executor places present tensors on {executor.output_location.value}, "
                f"engine expects {self.config.cache_placement.value}"
            )
        expected = set(decoder_input_names(model_config.num_hidden_layers, self.config.need_position_ids))
        declared = set(executor.input_names)
        if declared != expected:
            raise ConfigurationError(
                f"model inputs do not match config: missing={sorted(expected - declared)}, "
                f"unexpected={sorted(declared - expected)}"
            )

        # Generation session state
        self.output_tokens: List[int] = []
        self.state = DecodeState.IDLE
        self.last_state = DecodeState.IDLE
        self.last_stats: Optional[GenerationStats] = None
        self._cancel = CancellationToken()
        self._in_flight = threading.Lock()

        # Integer counters
        self.num_turns: int = 0
        self.total_steps: int = 0
        self.total_tokens_generated: int = 0

    @property
    def num_cache_tensors(self) -> int:
        return len(self.cache)

    def reset_conversation(self):
        """Forget the conversation: empty output, fresh num_layers * 2 cache entries."""
        if self._in_flight.locked():
            raise RuntimeError("cannot reset while generate() is in flight")
        self.output_tokens = []
        self.cache.reset(self.model_config.num_hidden_layers, self.model_config.kv_dims, self.dtype)

    def abort(self):
        """Cancel the call in flight; the loop stops before the next step.

        Between calls this has no effect on the next generate(), which
        starts with its own token.
        """
        self._cancel.cancel()

    def close(self):
        """Release the cache without starting a new turn."""
        self.cache.clear()

    def generate(
        self,
        prompt_tokens: Sequence[int],
        callback: Optional[ProgressCallback] = None,
        max_tokens: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[int]:
        """
        Greedy-decode a continuation of prompt_tokens.

        Args:
            prompt_tokens: non-empty token ids
            callback: called after every step with the output so far
                (never called in profiling mode)
            max_tokens: budget for the whole output sequence, prompt included
            cancel: caller-owned token for this call (default: a fresh one,
                reachable through abort())

        Returns:
            Full output sequence (prompt + generated). Slice off the prompt
            to get the continuation.

        Raises:
            ValueError: empty or malformed prompt, bad budget
            ConfigurationError: cache not primed (call reset_conversation)
            ExecutionError / NumericalError: after cleanup has run
        """
        if not self._in_flight.acquire(blocking=False):
            raise RuntimeError("generate() is already in flight on this engine")
        try:
            self._cancel = cancel if cancel is not None else CancellationToken()
            return self._generate(prompt_tokens, callback, max_tokens)
        finally:
            self._in_flight.release()

    # ---------------------------------------------------------------------
    # Loop
    # ---------------------------------------------------------------------

    def _generate(self, prompt_tokens, callback, max_tokens) -> List[int]:
        prompt = _validate_prompt(prompt_tokens)
        budget = self.config.max_tokens if max_tokens is None else int(max_tokens)
        if budget < 1:
            raise ValueError(f"max_tokens must be >= 1, got {budget}")
        expected_entries = 2 * self.model_config.num_hidden_layers
        if len(self.cache) != expected_entries:
            raise ConfigurationError(
                f"cache holds {len(self.cache)} entries, expected {expected_entries}: "
                f"call reset_conversation() before generate()"
            )

        self.num_turns += 1
        log = TurnLogger(self.num_turns, logger)
        terminal = self.config.terminal_ids
        cancel = self._cancel

        first_token_ms: Optional[float] = None
        steps = 0
        prompt_len = len(prompt)
        finish_reason = "error"
        last_token: Optional[int] = None

        try:
            self.state = DecodeState.PRIMING
            self._prime(prompt)
            log.debug("Priming", prompt_tokens=prompt_len, budget=budget)

            self.state = DecodeState.STEPPING
            while True:
                if last_token is not None and last_token in terminal:
                    finish_reason = "stop"
                    break
                if len(self.output_tokens) >= budget:
                    finish_reason = "length"
                    break
                if cancel.cancelled:
                    finish_reason = "cancelled"
                    break

                last_token = self._step(callback)
                steps += 1
                if first_token_ms is None:
                    first_token_ms = log.elapsed_ms()

            self.state = DecodeState.ABORTED if finish_reason == "cancelled" else DecodeState.COMPLETED
        except Exception as e:
            self.state = DecodeState.FAILED
            log.error(f"Generation failed at step {steps}: {type(e).__name__}: {e}")
            raise
        finally:
            self._cleanup()
            self.last_stats = GenerationStats(
                turn_id=self.num_turns,
                prompt_tokens=prompt_len,
                generated_tokens=steps,
                num_steps=steps,
                finish_reason=finish_reason,
                first_token_ms=first_token_ms,
                elapsed_ms=log.elapsed_ms(),
            )
            self.total_steps += steps
            self.total_tokens_generated += steps
            self.last_state = self.state
            self.state = DecodeState.IDLE

        summary = self.last_stats.to_dict()
        summary.pop("turn_id")
        log.info("Generation finished", **summary)
        return list(self.output_tokens)

    def _prime(self, prompt: List[int]):
        prior = len(self.output_tokens)
        self.cache.set_input("input_ids", token_tensor(prompt))
        if self.config.need_position_ids:
            self.cache.set_input("position_ids", position_tensor(prior, len(prompt)))
        self.output_tokens.extend(prompt)

    def _step(self, callback: Optional[ProgressCallback]) -> int:
        """One evaluation: run, pick, append, swap cache, refeed. Returns the token."""
        seqlen = len(self.output_tokens)
        self.cache.set_input("attention_mask", attention_mask_tensor(seqlen))

        outputs = self.executor.run(self.cache.feed())
        try:
            token = argmax(outputs["logits"])
            self.output_tokens.append(token)

            if callback is not None and not self.config.profiling:
                callback(list(self.output_tokens))

            self.cache.update_from_outputs(outputs)
        finally:
            # Outputs not adopted by the cache (logits, or everything on failure)
            owned = {id(t) for t in self.cache.feed().values()}
            for t in outputs.values():
                if id(t) not in owned:
                    t.release()

        self.cache.set_input("input_ids", token_tensor([token]))
        if self.config.need_position_ids:
            self.cache.set_input("position_ids", position_tensor(seqlen, 1))
        return token

    def _cleanup(self):
        """Runs on every exit path: release accelerator tensors, clear the feed."""
        try:
            if self.config.profiling:
                self.executor.end_profiling()
        finally:
            self.cache.clear()

    def get_stats(self) -> Dict[str, int]:
        """Engine stats: all integers."""
        stats = {
            "num_turns": self.num_turns,
            "total_steps": self.total_steps,
            "total_tokens_generated": self.total_tokens_generated,
            "output_tokens": len(self.output_tokens),
            "executor_runs": self.executor.num_runs,
        }
        stats.update(self.cache.get_stats())
        return stats


def _validate_prompt(prompt_tokens: Sequence[int]) -> List[int]:
    if prompt_tokens is None or isinstance(prompt_tokens, (str, bytes)):
        raise ValueError("prompt_tokens must be a sequence of token ids")
    prompt = []
    for tok in prompt_tokens:
        try:
            tid = int(tok)
        except (TypeError, ValueError):
            raise ValueError(f"invalid token id in prompt: {tok!r}") from None
        if tid < 0 or tid != tok:
            raise ValueError(f"invalid token id in prompt: {tok!r}")
        prompt.append(tid)
    if not prompt:
        raise ValueError("prompt_tokens must not be empty")
    return prompt


# =========================================================================
# Async front-end
# =========================================================================

class AsyncDecodingEngine:
    """
    Asyncio wrapper: one DecodingEngine, many async callers.

    Calls are serialised with an asyncio.Lock (the engine supports a single
    stream) and the blocking loop runs in a worker thread, so the event loop
    stays responsive while the executor evaluates.
    """

    def __init__(self, engine: DecodingEngine):
        self.engine = engine
        self._lock = asyncio.Lock()
        self._current: Optional[CancellationToken] = None

        # Stats
        self.active_requests: int = 0
        self.waiting_requests: int = 0
        self.completed_requests: int = 0

    async def generate(
        self,
        prompt_tokens: Sequence[int],
        callback: Optional[ProgressCallback] = None,
        max_tokens: Optional[int] = None,
        reset: bool = True,
        timeout_s: Optional[float] = None,
    ) -> List[int]:
        """
        Run one turn. reset=True starts a fresh conversation first.

        timeout_s bounds wall-clock time (reset and priming included) by
        cancelling this call's token from a timer; the partial output is
        returned, not an error.

        If the awaiting task is cancelled, the worker is stopped and the
        lock is held until it has returned, then CancelledError propagates.

        The callback runs on the worker thread.
        """
        self.waiting_requests += 1
        try:
            await self._lock.acquire()
        finally:
            self.waiting_requests -= 1
        try:
            self.active_requests += 1
            loop = asyncio.get_running_loop()
            token = CancellationToken()
            self._current = token

            def _run():
                if reset:
                    self.engine.reset_conversation()
                return self.engine.generate(prompt_tokens, callback, max_tokens, cancel=token)

            timer = loop.call_later(timeout_s, token.cancel) if timeout_s else None
            worker = loop.run_in_executor(None, _run)
            try:
                return await asyncio.shield(worker)
            except asyncio.CancelledError:
                token.cancel()
                await asyncio.wait({worker})
                raise
            finally:
                if timer is not None:
                    timer.cancel()
                self._current = None
                self.active_requests -= 1
                self.completed_requests += 1
        finally:
            self._lock.release()

    async def generate_stream(
        self,
        prompt_tokens: Sequence[int],
        max_tokens: Optional[int] = None,
        reset: bool = True,
        timeout_s: Optional[float] = None,
    ) -> AsyncIterator[int]:
        """Yield generated token ids as they are produced."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def _on_progress(tokens: List[int]):
            loop.call_soon_threadsafe(queue.put_nowait, tokens[-1])

        task = asyncio.create_task(self.generate(prompt_tokens, _on_progress, max_tokens, reset, timeout_s))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                token = await queue.get()
                if token is None:
                    break
                yield token
            # Surface generation errors to the consumer
            await task
        finally:
            if not task.done():
                # Consumer went away mid-stream: stops this call only,
                # or drops it from the queue if it never started
                task.cancel()
                await asyncio.wait({task})
                if not task.cancelled() and task.exception() is not None:
                    logger.warning(f"Stream closed early, generation ended with: {task.exception()}")

    def abort(self) -> bool:
        """Stop the call holding the engine. Queued calls are unaffected.
        Returns True if a call was running."""
        token = self._current
        if token is None:
            return False
        token.cancel()
        return True

    def get_stats(self) -> Dict[str, int]:
        stats = self.engine.get_stats()
        stats["active_requests"] = self.active_requests
        stats["waiting_requests"] = self.waiting_requests
        stats["completed_requests"] = self.completed_requests
        return stats

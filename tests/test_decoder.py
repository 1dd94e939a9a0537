"""
kvchat :: Test Decoding Engine

Greedy decode loop against a scripted executor:
  - prompt prefix, eos / budget / cancellation termination
  - cleanup on every exit path (cache empty, no live accelerator tensors)
  - feed shapes and position ids per step
  - profiling mode, additional terminal ids, placement checks

Run:
    python -m pytest tests/test_decoder.py -v

INL - 2025
"""

import pytest
import torch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kvchat.core.config import EngineConfig, ModelConfig
from kvchat.core.errors import ConfigurationError, ExecutionError, NumericalError
from kvchat.core.tensors import Location, live_accelerator_tensors
from kvchat.engine.decoder import CancellationToken, DecodeState, DecodingEngine
from kvchat.engine.executor import ScriptedStepExecutor

NUM_LAYERS = 2
VOCAB = 16
EOS = 2


def tiny_config() -> ModelConfig:
    return ModelConfig(
        num_hidden_layers=NUM_LAYERS,
        num_attention_heads=2,
        num_key_value_heads=2,
        hidden_size=8,
        vocab_size=VOCAB,
        eos_token_id=[EOS],
    )


def make_engine(script, placement=Location.HOST, fail_at=None, need_position_ids=True, **overrides):
    model_config = tiny_config()
    executor = ScriptedStepExecutor(
        num_layers=NUM_LAYERS,
        kv_dims=model_config.kv_dims,
        vocab_size=VOCAB,
        script=script,
        output_location=placement,
        need_position_ids=need_position_ids,
        fail_at=fail_at,
    )
    config = EngineConfig.for_model(
        model_config,
        cache_placement=placement,
        need_position_ids=need_position_ids,
        dtype="float32",
        **overrides,
    )
    engine = DecodingEngine(executor, model_config, config)
    engine.reset_conversation()
    return engine, executor


def sequence(*tokens):
    """Script emitting tokens[step], then repeating the last one."""
    return lambda step, fed: tokens[min(step, len(tokens) - 1)]


def next_id(step, fed):
    """Content-driven script: last fed id + 1."""
    return (fed[-1] + 1) % VOCAB


class PositionRecorder(ScriptedStepExecutor):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.positions = []
        self.masks = []

    def _execute(self, feed):
        self.positions.append(feed["position_ids"][0].tolist())
        self.masks.append(feed["attention_mask"][0].tolist())
        return super()._execute(feed)


# =========================================================================
# Termination
# =========================================================================

class TestTermination:

    def test_eos_scenario(self):
        engine, _ = make_engine(sequence(7, 7, 2))
        out = engine.generate([5, 9, 2], max_tokens=6)
        assert out == [5, 9, 2, 7, 7, 2]
        assert engine.last_stats.finish_reason == "stop"
        assert engine.last_state == DecodeState.COMPLETED

    def test_output_starts_with_prompt(self):
        engine, _ = make_engine(next_id)
        prompt = [3, 4, 1, 0]
        out = engine.generate(prompt, max_tokens=9)
        assert out[:len(prompt)] == prompt
        assert all(isinstance(t, int) for t in out)

    def test_bounded_without_eos(self):
        engine, executor = make_engine(sequence(7))
        out = engine.generate([1, 3, 4], max_tokens=10)
        assert len(out) == 10
        assert out[3:] == [7] * 7
        assert engine.last_stats.finish_reason == "length"
        assert engine.last_stats.generated_tokens == 7
        assert executor.num_runs == 7

    def test_budget_below_prompt_runs_no_step(self):
        engine, executor = make_engine(sequence(7))
        out = engine.generate([1, 3, 4, 5], max_tokens=2)
        assert out == [1, 3, 4, 5]
        assert executor.num_runs == 0
        assert engine.num_cache_tensors == 0

    def test_default_budget_from_config(self):
        engine, _ = make_engine(sequence(7), max_tokens=5)
        out = engine.generate([1])
        assert len(out) == 5

    def test_additional_terminal_id(self):
        engine, _ = make_engine(sequence(5, 11, 7), additional_terminal_ids=[11])
        out = engine.generate([1, 3], max_tokens=20)
        assert out == [1, 3, 5, 11]
        assert engine.last_stats.finish_reason == "stop"

    def test_eos_in_prompt_does_not_stop(self):
        engine, _ = make_engine(sequence(7, 2))
        out = engine.generate([EOS], max_tokens=10)
        assert out == [EOS, 7, 2]


# =========================================================================
# Cleanup on every exit path
# =========================================================================

class TestCleanup:

    def test_cache_count_during_stepping(self):
        engine, _ = make_engine(sequence(7))
        seen = []
        engine.generate([1, 3], callback=lambda out: seen.append(engine.num_cache_tensors), max_tokens=6)
        assert seen == [2 * NUM_LAYERS] * 4
        assert engine.num_cache_tensors == 0

    def test_non_finite_logits(self):
        def script(step, fed):
            if step == 1:
                row = torch.zeros(VOCAB)
                row[4] = float("nan")
                return row
            return 7

        engine, _ = make_engine(script)
        with pytest.raises(NumericalError):
            engine.generate([1, 3], max_tokens=10)
        assert engine.num_cache_tensors == 0
        assert len(engine.cache.names()) == 0
        assert engine.last_state == DecodeState.FAILED
        assert engine.last_stats.finish_reason == "error"
        assert engine.state == DecodeState.IDLE

    def test_executor_failure(self):
        engine, _ = make_engine(sequence(7), fail_at=2)
        with pytest.raises(ExecutionError, match="scripted failure"):
            engine.generate([1, 3], max_tokens=10)
        assert engine.num_cache_tensors == 0
        assert engine.output_tokens == [1, 3, 7, 7]

    def test_generate_requires_reset(self):
        engine, _ = make_engine(sequence(7))
        engine.generate([1], max_tokens=3)
        with pytest.raises(ConfigurationError, match="reset_conversation"):
            engine.generate([1], max_tokens=3)

    def test_reset_gives_identical_output(self):
        engine, _ = make_engine(next_id)
        first = engine.generate([3, 4], max_tokens=8)
        engine.reset_conversation()
        second = engine.generate([3, 4], max_tokens=8)
        assert first == second == [3, 4, 5, 6, 7, 8, 9, 10]

    def test_validation_leaves_cache_primed(self):
        engine, _ = make_engine(sequence(7))
        for bad in ([], "abc", [1, -1], [1, 2.5], None):
            with pytest.raises(ValueError):
                engine.generate(bad, max_tokens=4)
        assert engine.num_cache_tensors == 2 * NUM_LAYERS
        with pytest.raises(ValueError):
            engine.generate([1], max_tokens=0)
        assert engine.generate([1], max_tokens=2) == [1, 7]


# =========================================================================
# Cancellation
# =========================================================================

class TestCancellation:

    def test_abort_from_callback(self):
        engine, _ = make_engine(sequence(7))

        def on_progress(out):
            if len(out) == 5:
                engine.abort()

        out = engine.generate([1, 3, 4], callback=on_progress, max_tokens=50)
        assert out == [1, 3, 4, 7, 7]
        assert engine.last_stats.finish_reason == "cancelled"
        assert engine.last_state == DecodeState.ABORTED
        assert engine.num_cache_tensors == 0

    def test_abort_before_call_is_cleared(self):
        engine, _ = make_engine(sequence(7, 2))
        engine.abort()
        out = engine.generate([1], max_tokens=10)
        assert out == [1, 7, 2]

    def test_token_cancelled_before_priming_is_honoured(self):
        engine, executor = make_engine(sequence(7, 2))
        token = CancellationToken()
        token.cancel()
        out = engine.generate([1, 3], max_tokens=10, cancel=token)
        assert out == [1, 3]
        assert executor.step == 0
        assert engine.last_stats.finish_reason == "cancelled"
        assert engine.last_state == DecodeState.ABORTED
        assert engine.num_cache_tensors == 0

    def test_abort_reaches_caller_token(self):
        engine, _ = make_engine(sequence(7))
        token = CancellationToken()

        def on_progress(out):
            if len(out) == 3:
                engine.abort()

        out = engine.generate([1], callback=on_progress, max_tokens=50, cancel=token)
        assert out == [1, 7, 7]
        assert token.cancelled

    def test_callback_gets_copy(self):
        engine, _ = make_engine(sequence(7, 2))
        snapshots = []
        engine.generate([1], callback=snapshots.append, max_tokens=10)
        assert snapshots == [[1, 7], [1, 7, 2]]

    def test_overlapping_call_rejected(self):
        engine, _ = make_engine(sequence(7))

        def reenter(out):
            engine.generate([1], max_tokens=3)

        with pytest.raises(RuntimeError, match="already in flight"):
            engine.generate([1], callback=reenter, max_tokens=5)
        assert engine.num_cache_tensors == 0

    def test_reset_during_call_rejected(self):
        engine, _ = make_engine(sequence(7))
        with pytest.raises(RuntimeError, match="cannot reset"):
            engine.generate([1], callback=lambda out: engine.reset_conversation(), max_tokens=5)


# =========================================================================
# Feed construction
# =========================================================================

class TestFeed:

    def test_feed_shapes_per_step(self):
        engine, executor = make_engine(sequence(7))
        engine.generate([5, 9, 2], max_tokens=6)
        assert len(executor.feeds) == 3

        first = executor.feeds[0]
        assert first["input_ids"] == [1, 3]
        assert first["position_ids"] == [1, 3]
        assert first["attention_mask"] == [1, 3]
        assert first["past_key_values.0.key"] == [1, 2, 0, 4]

        for i, feed in enumerate(executor.feeds[1:], start=1):
            assert feed["input_ids"] == [1, 1]
            assert feed["position_ids"] == [1, 1]
            assert feed["attention_mask"] == [1, 3 + i]
            assert feed["past_key_values.1.value"] == [1, 2, 2 + i, 4]

    def test_position_values(self):
        model_config = tiny_config()
        executor = PositionRecorder(
            num_layers=NUM_LAYERS, kv_dims=model_config.kv_dims, vocab_size=VOCAB, script=sequence(7),
        )
        engine = DecodingEngine(executor, model_config, EngineConfig.for_model(model_config, dtype="float32"))
        engine.reset_conversation()
        engine.generate([5, 9, 2], max_tokens=6)
        assert executor.positions == [[0, 1, 2], [3], [4]]
        assert executor.masks == [[1, 1, 1], [1, 1, 1, 1], [1, 1, 1, 1, 1]]

    def test_without_position_ids(self):
        engine, executor = make_engine(sequence(7), need_position_ids=False)
        engine.generate([1, 3], max_tokens=4)
        assert all("position_ids" not in feed for feed in executor.feeds)

    def test_input_names_must_match(self):
        model_config = tiny_config()
        executor = ScriptedStepExecutor(NUM_LAYERS, model_config.kv_dims, VOCAB, sequence(7), need_position_ids=True)
        config = EngineConfig.for_model(model_config, need_position_ids=False)
        with pytest.raises(ConfigurationError, match="model inputs"):
            DecodingEngine(executor, model_config, config)


# =========================================================================
# Profiling
# =========================================================================

class TestProfiling:

    def test_profiling_suppresses_callback(self):
        engine, executor = make_engine(sequence(7, 2), profiling=True)
        calls = []
        out = engine.generate([1], callback=calls.append, max_tokens=10)
        assert out == [1, 7, 2]
        assert calls == []
        assert executor.profile_ended

    def test_profile_ended_on_failure(self):
        engine, executor = make_engine(sequence(7), profiling=True, fail_at=0)
        with pytest.raises(ExecutionError):
            engine.generate([1], max_tokens=10)
        assert executor.profile_ended
        assert engine.num_cache_tensors == 0


# =========================================================================
# Placement
# =========================================================================

class TestPlacement:

    def test_accelerator_release(self):
        baseline = live_accelerator_tensors()
        engine, _ = make_engine(sequence(7), placement=Location.ACCELERATOR)
        resident = []
        engine.generate([1, 3], callback=lambda out: resident.append(engine.cache.num_accelerator), max_tokens=6)

        # step 0 still sees the empty host entries from reset
        assert resident == [0] + [2 * NUM_LAYERS] * 3
        assert engine.cache.num_released == 2 * NUM_LAYERS * 4
        assert live_accelerator_tensors() == baseline

    def test_accelerator_release_on_failure(self):
        baseline = live_accelerator_tensors()
        engine, _ = make_engine(sequence(7), placement=Location.ACCELERATOR, fail_at=3)
        with pytest.raises(ExecutionError):
            engine.generate([1, 3], max_tokens=10)
        assert live_accelerator_tensors() == baseline

    def test_location_mismatch(self):
        model_config = tiny_config()
        executor = ScriptedStepExecutor(NUM_LAYERS, model_config.kv_dims, VOCAB, sequence(7))
        config = EngineConfig.for_model(model_config, cache_placement=Location.ACCELERATOR)
        with pytest.raises(ConfigurationError, match="executor places"):
            DecodingEngine(executor, model_config, config)

    def test_stats_are_integers(self):
        engine, _ = make_engine(sequence(7))
        engine.generate([1], max_tokens=4)
        stats = engine.get_stats()
        assert stats["num_turns"] == 1
        assert stats["total_steps"] == 3
        assert stats["cache_entries"] == 0
        assert all(isinstance(v, int) for v in stats.values())

    def test_turn_timing(self):
        engine, _ = make_engine(sequence(7))
        engine.generate([1], max_tokens=4)
        stats = engine.last_stats
        assert stats.first_token_ms is not None
        assert 0 < stats.first_token_ms <= stats.elapsed_ms
        assert stats.tokens_per_sec > 0

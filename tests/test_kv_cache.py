"""
kvchat :: Test KV Cache Store

  - reset: num_layers * 2 empty entries of the configured dims
  - replace: ownership transfer, accelerator release, placement check
  - feed table: inputs + cache by reference
  - clear: everything released

INL - 2025
"""

import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kvchat.core.errors import ConfigurationError
from kvchat.core.kv_cache import CacheStore, cache_name, present_to_past
from kvchat.core.tensors import (
    Location, ResidentTensor, live_accelerator_tensors, token_tensor, position_tensor,
    attention_mask_tensor, dtype_from_str,
)

DIMS = (1, 2, 0, 4)


def kv(seq, location=Location.HOST):
    return ResidentTensor(torch.zeros(1, 2, seq, 4), location)


class TestNames:

    def test_cache_name(self):
        assert cache_name(3, "key") == "past_key_values.3.key"

    def test_present_to_past(self):
        assert present_to_past("present.0.value") == "past_key_values.0.value"
        assert present_to_past("logits") is None


class TestReset:

    def test_entry_count_and_shape(self):
        store = CacheStore()
        store.reset(3, DIMS, torch.float16)
        assert len(store) == 6
        for name in store.cache_names():
            t = store.get(name)
            assert t.shape == DIMS
            assert t.dtype == torch.float16
        assert store.seq_len == 0

    def test_reset_drops_inputs(self):
        store = CacheStore()
        store.reset(1, DIMS, torch.float32)
        store.set_input("input_ids", token_tensor([1, 2]))
        store.reset(2, DIMS, torch.float32)
        assert "input_ids" not in store
        assert len(store) == 4
        assert store.num_resets == 2

    def test_bad_dims(self):
        store = CacheStore()
        with pytest.raises(ConfigurationError):
            store.reset(2, (1, 2, 5, 4), torch.float32)
        with pytest.raises(ConfigurationError):
            store.reset(2, (2, 4), torch.float32)
        with pytest.raises(ConfigurationError):
            store.reset(0, DIMS, torch.float32)


class TestReplace:

    def test_replace_swaps_entry(self):
        store = CacheStore()
        store.reset(1, DIMS, torch.float32)
        new = kv(3)
        store.replace("past_key_values.0.key", new)
        assert store.get("past_key_values.0.key") is new
        assert store.seq_len == 3
        assert store.num_replaced == 1

    def test_replace_releases_accelerator(self):
        baseline = live_accelerator_tensors()
        store = CacheStore(placement=Location.ACCELERATOR)
        store.reset(1, DIMS, torch.float32)
        first = kv(1, Location.ACCELERATOR)
        second = kv(2, Location.ACCELERATOR)
        store.replace("past_key_values.0.key", first)
        store.replace("past_key_values.0.key", second)
        assert first.released
        assert not second.released
        assert store.num_released == 1
        assert live_accelerator_tensors() == baseline + 1
        store.clear()
        assert live_accelerator_tensors() == baseline

    def test_location_mismatch_rejected(self):
        baseline = live_accelerator_tensors()
        store = CacheStore(placement=Location.HOST)
        store.reset(1, DIMS, torch.float32)
        stray = kv(1, Location.ACCELERATOR)
        with pytest.raises(ConfigurationError, match="placement"):
            store.replace("past_key_values.0.key", stray)
        assert stray.released
        assert live_accelerator_tensors() == baseline

    def test_unknown_slot(self):
        store = CacheStore()
        store.reset(1, DIMS, torch.float32)
        with pytest.raises(ConfigurationError):
            store.replace("past_key_values.9.key", kv(1))

    def test_update_from_outputs(self):
        store = CacheStore()
        store.reset(1, DIMS, torch.float32)
        outputs = {
            "logits": ResidentTensor(torch.zeros(1, 1, 8)),
            "present.0.key": kv(1),
            "present.0.value": kv(1),
        }
        consumed = store.update_from_outputs(outputs)
        assert sorted(consumed) == ["present.0.key", "present.0.value"]
        assert store.get("past_key_values.0.value") is outputs["present.0.value"]
        assert store.seq_len == 1


class TestFeed:

    def test_feed_shares_tensors(self):
        store = CacheStore()
        store.reset(2, DIMS, torch.float32)
        ids = token_tensor([4, 5])
        store.set_input("input_ids", ids)
        feed = store.feed()
        assert feed["input_ids"] is ids
        assert feed["past_key_values.1.key"] is store.get("past_key_values.1.key")
        assert len(feed) == 5

    def test_set_input_replaces(self):
        store = CacheStore()
        store.set_input("attention_mask", attention_mask_tensor(3))
        store.set_input("attention_mask", attention_mask_tensor(4))
        assert store.get("attention_mask").shape == (1, 4)

    def test_set_input_refuses_cache_slot(self):
        store = CacheStore()
        store.reset(1, DIMS, torch.float32)
        with pytest.raises(ConfigurationError):
            store.set_input("past_key_values.0.key", kv(1))

    def test_get_missing(self):
        with pytest.raises(KeyError):
            CacheStore().get("input_ids")

    def test_clear(self):
        store = CacheStore()
        store.reset(2, DIMS, torch.float32)
        store.set_input("input_ids", token_tensor([1]))
        store.clear()
        assert len(store) == 0
        assert store.names() == []
        assert store.get_stats()["cache_entries"] == 0


class TestTensors:

    def test_feed_builders(self):
        assert token_tensor([7, 8, 9]).data.tolist() == [[7, 8, 9]]
        assert token_tensor([7]).dtype == torch.int64
        assert position_tensor(4, 3).data.tolist() == [[4, 5, 6]]
        assert attention_mask_tensor(2).data.tolist() == [[1, 1]]

    def test_release_is_idempotent(self):
        baseline = live_accelerator_tensors()
        t = kv(1, Location.ACCELERATOR)
        assert live_accelerator_tensors() == baseline + 1
        assert t.release() is True
        assert t.release() is False
        assert live_accelerator_tensors() == baseline

    def test_use_after_release(self):
        t = kv(1)
        t.release()
        with pytest.raises(RuntimeError):
            t.data

    def test_dtype_from_str(self):
        assert dtype_from_str("fp16") == torch.float16
        with pytest.raises(ConfigurationError):
            dtype_from_str("int3")

"""
kvchat :: Step Executor

Thin contract around one forward evaluation of the network:

    outputs = executor.run(feed)

  feed:     {input_ids, position_ids?, attention_mask, past_key_values.{i}.{key,value}}
  outputs:  {logits [1, seq, vocab], present.{i}.{key,value}}

Every output comes back as a ResidentTensor tagged with the location the
executor declared for it at construction time. Present-state outputs
follow the cache placement policy; everything else is host resident.

Implementations:
  - OnnxStepExecutor: onnxruntime InferenceSession (production)
  - ScriptedStepExecutor: rule-driven logits, no network (tests, benchmarks)

INL - 2025
"""

import os
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import torch

from kvchat.core.errors import ConfigurationError, ExecutionError
from kvchat.core.kv_cache import cache_name, present_to_past
from kvchat.core.logging import get_logger
from kvchat.core.tensors import Location, ResidentTensor

logger = get_logger("kvchat.executor")


def decoder_input_names(num_layers: int, need_position_ids: bool = True) -> List[str]:
    """Input names a KV-cached decoder declares, in export order."""
    names = ["input_ids", "attention_mask"]
    if need_position_ids:
        names.insert(1, "position_ids")
    for i in range(num_layers):
        names.append(cache_name(i, "key"))
        names.append(cache_name(i, "value"))
    return names


class StepExecutor:
    """
    Base executor: validates the feed, calls _execute(), tags outputs.

    Subclasses implement _execute(feed) -> {name: torch.Tensor} on plain
    tensors; they never see ResidentTensor and never manage lifetimes.

    Args:
        input_names: names the loaded model declares
        output_location: placement for present-state outputs
        accelerator_device: torch device accelerator outputs are moved to
            (None: leave them where the executor produced them)
    """

    def __init__(
        self,
        input_names: Sequence[str],
        output_location: Location = Location.HOST,
        accelerator_device: Optional[str] = None,
    ):
        self.input_names = list(input_names)
        self.output_location = Location(output_location)
        self.accelerator_device = accelerator_device
        self.num_runs: int = 0

    @property
    def need_position_ids(self) -> bool:
        return "position_ids" in self.input_names

    def location_for(self, output_name: str) -> Location:
        """Declared location of an output (fixed per session, not per step)."""
        if present_to_past(output_name) is not None:
            return self.output_location
        return Location.HOST

    def run(self, feed: Mapping[str, ResidentTensor]) -> Dict[str, ResidentTensor]:
        """
        One forward evaluation. Blocks until the executor finishes.

        The caller owns the returned tensors.

        Raises:
            ExecutionError: malformed feed, executor fault, missing logits
        """
        expected = set(self.input_names)
        given = set(feed.keys())
        if given != expected:
            missing = sorted(expected - given)
            extra = sorted(given - expected)
            raise ExecutionError(f"feed does not match model inputs (missing={missing}, unexpected={extra})")

        try:
            raw = self._execute({name: t.data for name, t in feed.items()})
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"executor failed: {type(e).__name__}: {e}") from e

        outputs: Dict[str, ResidentTensor] = {}
        try:
            for name, data in raw.items():
                location = self.location_for(name)
                if location is Location.ACCELERATOR and self.accelerator_device is not None and not data.is_cuda:
                    data = data.to(self.accelerator_device)
                outputs[name] = ResidentTensor(data, location)
            if "logits" not in outputs:
                raise ExecutionError(f"executor returned no logits (outputs: {sorted(outputs)})")
        except Exception as e:
            for t in outputs.values():
                t.release()
            if isinstance(e, ExecutionError):
                raise
            raise ExecutionError(f"could not place executor outputs: {e}") from e

        self.num_runs += 1
        return outputs

    def _execute(self, feed: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        raise NotImplementedError

    def end_profiling(self) -> Optional[str]:
        """Finish executor-side profiling. Returns the trace path if any."""
        return None


# =========================================================================
# ONNX Runtime
# =========================================================================

_PROVIDERS = {
    "cuda": ["CUDAExecutionProvider", "CPUExecutionProvider"],
    "dml": ["DmlExecutionProvider", "CPUExecutionProvider"],
    "cpu": ["CPUExecutionProvider"],
}


# torch dtype -> numpy type for IOBinding element types
_NP_TYPES = {
    torch.float16: np.float16,
    torch.float32: np.float32,
    torch.int64: np.int64,
    torch.int32: np.int32,
}


class OnnxStepExecutor(StepExecutor):
    """
    Executor over an ONNX Runtime session.

    Two run paths:
      - plain: torch feed -> numpy -> session.run -> numpy -> torch
      - bound (IOBinding): past tensors are bound in place and each present
        output is written by the session into a torch buffer allocated on
        the bind device. With accelerator placement the cache never leaves
        the device between steps.

    Accelerator placement always uses the bound path; io_binding=True
    selects it for host placement as well (outputs land in preallocated
    host buffers instead of session-allocated arrays).
    """

    def __init__(
        self,
        model_path: str,
        provider: str = "cuda",
        output_location: Location = Location.HOST,
        profiling: bool = False,
        verbose: bool = False,
        intra_op_num_threads: int = 1,
        io_binding: Optional[bool] = None,
    ):
        import onnxruntime as ort

        if provider not in _PROVIDERS:
            raise ConfigurationError(f"Unknown provider: {provider}. Available: {', '.join(_PROVIDERS)}")
        if not os.path.exists(model_path):
            raise ConfigurationError(f"model file not found: {model_path}")

        opts = ort.SessionOptions()
        opts.intra_op_num_threads = intra_op_num_threads
        if profiling:
            opts.enable_profiling = True
        if verbose:
            opts.log_severity_level = 0
            opts.log_verbosity_level = 0

        available = set(ort.get_available_providers())
        providers = [p for p in _PROVIDERS[provider] if p in available] or ["CPUExecutionProvider"]
        if providers[0] != _PROVIDERS[provider][0]:
            logger.warning(f"{_PROVIDERS[provider][0]} not available, running on {providers[0]}")

        try:
            # External weights (<model>_data) are resolved relative to model_path
            self.session = ort.InferenceSession(model_path, sess_options=opts, providers=providers)
        except Exception as e:
            raise ConfigurationError(f"could not create inference session for {model_path}: {e}") from e

        self.provider = provider
        self.output_names = [o.name for o in self.session.get_outputs()]

        accelerator_device = None
        if output_location == Location.ACCELERATOR:
            if not torch.cuda.is_available():
                raise ConfigurationError("accelerator cache placement requested but CUDA is not available")
            if providers[0] != "CUDAExecutionProvider":
                raise ConfigurationError(
                    f"accelerator cache placement needs CUDAExecutionProvider, session runs on {providers[0]}"
                )
            accelerator_device = "cuda"

        if io_binding is None:
            io_binding = output_location == Location.ACCELERATOR
        elif not io_binding and output_location == Location.ACCELERATOR:
            raise ConfigurationError("accelerator cache placement requires io_binding")
        self.io_binding = io_binding
        self.bind_device = accelerator_device or "cpu"

        super().__init__(
            input_names=[i.name for i in self.session.get_inputs()],
            output_location=output_location,
            accelerator_device=accelerator_device,
        )
        logger.info(
            f"Session ready: {os.path.basename(model_path)} on {providers[0]}, "
            f"{len(self.input_names)} inputs, {len(self.output_names)} outputs"
            + (f", outputs bound to {self.bind_device}" if self.io_binding else "")
        )

    def _execute(self, feed: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        if self.io_binding:
            return self._execute_bound(feed)
        np_feed = {name: t.detach().cpu().numpy() for name, t in feed.items()}
        results = self.session.run(self.output_names, np_feed)
        return {name: torch.from_numpy(np.ascontiguousarray(arr)) for name, arr in zip(self.output_names, results)}

    def present_shape(self, output_name: str, feed: Mapping[str, torch.Tensor]) -> Optional[List[int]]:
        """Shape of a present output: its past input grown by the tokens fed this step.
        None for outputs without a past counterpart (logits)."""
        past = present_to_past(output_name)
        if past is None or past not in feed:
            return None
        shape = list(feed[past].shape)
        shape[2] += feed["input_ids"].shape[1]
        return shape

    def _execute_bound(self, feed: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        binding = self.session.io_binding()

        # Bound buffers must outlive run_with_iobinding
        keep = []
        for name, t in feed.items():
            t = t.detach().contiguous()
            if t.is_cuda and t.numel() > 0:
                binding.bind_input(
                    name, "cuda", t.device.index or 0, _NP_TYPES[t.dtype], list(t.shape), t.data_ptr(),
                )
                keep.append(t)
            else:
                arr = t.cpu().numpy()
                binding.bind_cpu_input(name, arr)
                keep.append(arr)

        buffers: Dict[str, torch.Tensor] = {}
        for name in self.output_names:
            shape = self.present_shape(name, feed)
            if shape is None:
                # Session allocates host memory (logits)
                binding.bind_output(name, "cpu")
                continue
            past = feed[present_to_past(name)]
            buf = torch.empty(shape, dtype=past.dtype, device=self.bind_device)
            binding.bind_output(
                name, buf.device.type, buf.device.index or 0, _NP_TYPES[buf.dtype], shape, buf.data_ptr(),
            )
            buffers[name] = buf

        binding.synchronize_inputs()
        self.session.run_with_iobinding(binding)
        binding.synchronize_outputs()

        # get_outputs() follows bind order, which is self.output_names
        outputs: Dict[str, torch.Tensor] = {}
        for name, value in zip(self.output_names, binding.get_outputs()):
            if name in buffers:
                outputs[name] = buffers[name]
            else:
                outputs[name] = torch.from_numpy(np.ascontiguousarray(value.numpy()))
        return outputs

    def end_profiling(self) -> Optional[str]:
        path = self.session.end_profiling()
        logger.info(f"Profile written: {path}")
        return path


# =========================================================================
# Scripted executor (no network)
# =========================================================================

# step index (0-based), tokens fed this step -> token id to favour, or a full logits row
ScriptFn = Callable[[int, List[int]], Union[int, torch.Tensor]]


class ScriptedStepExecutor(StepExecutor):
    """
    Executor whose logits follow a script instead of a network.

    Each call returns logits of shape [1, seq, vocab] whose last row is
    either the tensor the script returned or a one-hot-ish row favouring
    the returned token id, plus present tensors one step longer than the
    past tensors fed in (filled with the step index, so a stale cache is
    detectable).

    Args:
        num_layers / kv_dims / vocab_size: shape of the fake model
        script: rule producing the next token (see ScriptFn)
        fail_at: raise RuntimeError on this step index
    """

    def __init__(
        self,
        num_layers: int,
        kv_dims: Sequence[int],
        vocab_size: int,
        script: ScriptFn,
        output_location: Location = Location.HOST,
        need_position_ids: bool = True,
        fail_at: Optional[int] = None,
        dtype: torch.dtype = torch.float32,
    ):
        super().__init__(
            input_names=decoder_input_names(num_layers, need_position_ids),
            output_location=output_location,
        )
        self.num_layers = num_layers
        self.kv_dims = list(kv_dims)
        self.vocab_size = vocab_size
        self.script = script
        self.fail_at = fail_at
        self.dtype = dtype
        self.step = 0
        self.feeds: List[Dict[str, List[int]]] = []   # shapes seen per step
        self.profile_ended = False

    def _execute(self, feed: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        step = self.step
        self.step += 1
        self.feeds.append({name: list(t.shape) for name, t in feed.items()})
        if self.fail_at is not None and step == self.fail_at:
            raise RuntimeError(f"scripted failure at step {step}")

        fed = feed["input_ids"][0].tolist()
        seq = len(fed)
        choice = self.script(step, fed)
        logits = torch.zeros(1, seq, self.vocab_size, dtype=self.dtype)
        if isinstance(choice, torch.Tensor):
            logits[0, -1] = choice.to(self.dtype)
        else:
            logits[0, -1, int(choice)] = 10.0

        outputs = {"logits": logits}
        for i in range(self.num_layers):
            for kind in ("key", "value"):
                past = feed[cache_name(i, kind)]
                new = torch.full(
                    (1, self.kv_dims[1], seq, self.kv_dims[3]), float(step), dtype=past.dtype,
                )
                outputs[f"present.{i}.{kind}"] = torch.cat([past.cpu(), new], dim=2)
        return outputs

    def end_profiling(self) -> Optional[str]:
        self.profile_ended = True
        return None

"""Inference boundary.

The detector only needs a model that takes one NHWC pixel tensor and returns
a fixed list of output tensors whose shapes are known once the model is
loaded. Anything satisfying :class:`Interpreter` can be plugged in; the
ONNX Runtime adapter below is the one shipped with the package.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import numpy as np

logger = logging.getLogger(__name__)

_ONNX_DTYPES = {
    "tensor(float)": "float32",
    "tensor(float16)": "float16",
    "tensor(double)": "float64",
    "tensor(uint8)": "uint8",
    "tensor(int8)": "int8",
    "tensor(int32)": "int32",
    "tensor(int64)": "int64",
}


@dataclass(frozen=True)
class TensorSpec:
    name: str
    shape: tuple[int, ...]  # -1 for dimensions unknown at load time
    dtype: str = "float32"

    @property
    def rank(self) -> int:
        return len(self.shape)

    def describe(self) -> str:
        dims = "x".join("?" if d < 0 else str(d) for d in self.shape)
        return f"{dims}:{self.dtype}"


class Interpreter(Protocol):
    """Not reentrant: callers must not overlap ``run`` calls."""

    @property
    def input_spec(self) -> TensorSpec:  # NHWC
        ...

    @property
    def output_specs(self) -> list[TensorSpec]:
        ...

    def run(self, inputs: np.ndarray) -> list[np.ndarray]:
        ...

    def close(self) -> None:
        ...


def _static_shape(shape: Any) -> tuple[int, ...]:
    return tuple(int(d) if isinstance(d, int) and d > 0 else -1 for d in shape)


class OnnxInterpreter:
    """ONNX Runtime session exposed through the :class:`Interpreter` protocol.

    NCHW models are accepted; their input spec is reported as NHWC and the
    buffer is transposed before each run.
    """

    def __init__(self, model_path: str | Path, *, default_input_size: int = 416):
        try:
            import onnxruntime as ort
        except Exception as e:
            raise ImportError(
                "onnxruntime is required for ONNX balloon models. Install with: pip install onnxruntime"
            ) from e

        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(f"model not found: {self.model_path}")

        sess_options = ort.SessionOptions()
        sess_options.log_severity_level = 3
        self._session = ort.InferenceSession(
            str(self.model_path), sess_options=sess_options, providers=["CPUExecutionProvider"]
        )

        inp = self._session.get_inputs()[0]
        self._input_name = inp.name
        raw = list(_static_shape(inp.shape))
        while len(raw) < 4:
            raw.insert(0, 1)

        # NCHW when the channel axis sits right after the batch axis.
        self._channels_first = raw[1] in (1, 3) and raw[3] not in (1, 3)
        if self._channels_first:
            batch, channels, height, width = raw
        else:
            batch, height, width, channels = raw
        batch = batch if batch > 0 else 1
        height = height if height > 0 else default_input_size
        width = width if width > 0 else default_input_size
        channels = channels if channels > 0 else 3

        self._input_spec = TensorSpec(
            name=inp.name,
            shape=(batch, height, width, channels),
            dtype=_ONNX_DTYPES.get(inp.type, "float32"),
        )
        self._output_specs = [
            TensorSpec(name=o.name, shape=_static_shape(o.shape), dtype=_ONNX_DTYPES.get(o.type, "float32"))
            for o in self._session.get_outputs()
        ]
        logger.info("onnx model loaded: %s (channels_first=%s)", self.model_path, self._channels_first)

    @property
    def input_spec(self) -> TensorSpec:
        return self._input_spec

    @property
    def output_specs(self) -> list[TensorSpec]:
        return list(self._output_specs)

    def run(self, inputs: np.ndarray) -> list[np.ndarray]:
        feed = np.transpose(inputs, (0, 3, 1, 2)) if self._channels_first else inputs
        outputs = self._session.run([o.name for o in self._output_specs], {self._input_name: np.ascontiguousarray(feed)})
        return [np.asarray(o) for o in outputs]

    def close(self) -> None:
        self._session = None

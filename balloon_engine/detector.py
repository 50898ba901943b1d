from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import cv2
import numpy as np

from .config import DetectorConfig
from .decoder import DecodeContext, OutputLayout, UnrecognizedLayout, UnsupportedLayoutError, select_layout
from .interpreter import Interpreter, OnnxInterpreter
from .types import DetectedObject

logger = logging.getLogger(__name__)

CHANNEL_ORDERS = ("rgb", "bgr")


class DetectorUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class Detection:
    objects: list[DetectedObject]
    channel_order: str | None  # ordering that produced ``objects``; None when all were empty


def prepare_input(
    pixels: np.ndarray,
    *,
    width: int,
    height: int,
    channel_order: str = "rgb",
    dtype: str = "float32",
    batch: int = 1,
) -> np.ndarray:
    """Resize RGB page pixels into an NHWC model input buffer.

    Float inputs are scaled to [0, 1]; uint8 inputs keep raw values.
    """
    if channel_order not in CHANNEL_ORDERS:
        raise ValueError(f"unknown channel order: {channel_order}")

    img = cv2.resize(pixels, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)
    if channel_order == "bgr":
        img = cv2.cvtColor(img, cv2.COLOR_RGB2BGR)

    if dtype == "uint8":
        buf = img.astype(np.uint8)
    else:
        buf = img.astype(np.float32) / 255.0
    return np.repeat(buf[None, ...], max(1, int(batch)), axis=0)


class BalloonDetector:
    """Runs one model over page pixels and decodes the raw detections.

    The output layout is chosen once from the model's output specs. Calls to
    :meth:`detect` are serialized because interpreters are not reentrant.
    """

    def __init__(self, interpreter: Interpreter, cfg: DetectorConfig | None = None):
        self.cfg = cfg or DetectorConfig()
        self.interpreter = interpreter
        self._lock = threading.Lock()

        spec = interpreter.input_spec
        batch, height, width = spec.shape[0], spec.shape[1], spec.shape[2]
        self.input_batch = batch if batch > 0 else 1
        self.input_height = height if height > 0 else self.cfg.default_input_size
        self.input_width = width if width > 0 else self.cfg.default_input_size
        self.input_dtype = "uint8" if spec.dtype == "uint8" else "float32"

        try:
            self.layout: OutputLayout = select_layout(interpreter.output_specs, self.cfg)
        except UnsupportedLayoutError as e:
            logger.warning("unsupported output layout, detections disabled: %s", e)
            self.layout = UnrecognizedLayout(reason=str(e))

        self._ctx = DecodeContext.from_config(self.cfg, self.input_width, self.input_height)
        logger.info("detector ready: %s", self.describe_model())

    def describe_model(self) -> str:
        inp = self.interpreter.input_spec.describe()
        outs = ", ".join(s.describe() for s in self.interpreter.output_specs)
        return f"input {inp} -> outputs [{outs}] layout={self.layout.name}"

    def _decode(self, outputs: list[np.ndarray]) -> list[DetectedObject]:
        try:
            return self.layout.decode(outputs, self._ctx)
        except (ValueError, IndexError) as e:
            logger.warning("decode failed (%s): %s", self.layout.name, e)
            return []

    def detect_with(self, pixels: np.ndarray, channel_order: str) -> list[DetectedObject]:
        """Single attempt with an explicit channel order."""
        buf = prepare_input(
            pixels,
            width=self.input_width,
            height=self.input_height,
            channel_order=channel_order,
            dtype=self.input_dtype,
            batch=self.input_batch,
        )
        with self._lock:
            outputs = self.interpreter.run(buf)
        return self._decode(outputs)

    def detect(self, pixels: np.ndarray) -> Detection:
        """Try each configured channel order until one yields detections."""
        for order in self.cfg.channel_orders:
            objects = self.detect_with(pixels, order)
            logger.debug("channel order %s: %d raw detections", order, len(objects))
            if objects:
                return Detection(objects=objects, channel_order=order)
        return Detection(objects=[], channel_order=None)

    def close(self) -> None:
        with self._lock:
            self.interpreter.close()


@dataclass(frozen=True)
class DetectorLoad:
    detector: BalloonDetector | None
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.detector is not None

    def require(self) -> BalloonDetector:
        if self.detector is None:
            raise DetectorUnavailable(self.error or "detector not loaded")
        return self.detector


def load_detector(
    model_path: str | Path | None,
    cfg: DetectorConfig | None = None,
    *,
    interpreter_factory: Callable[[], Interpreter] | None = None,
) -> DetectorLoad:
    """Build a detector, capturing any failure in the result. Never raises."""
    cfg = cfg or DetectorConfig()
    try:
        if interpreter_factory is not None:
            interpreter = interpreter_factory()
        elif model_path is not None:
            interpreter = OnnxInterpreter(model_path, default_input_size=cfg.default_input_size)
        else:
            return DetectorLoad(detector=None, error="no model configured")
        return DetectorLoad(detector=BalloonDetector(interpreter, cfg))
    except Exception as e:
        logger.error("detector load failed: %s", e)
        return DetectorLoad(detector=None, error=f"{type(e).__name__}: {e}")

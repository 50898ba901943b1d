"""Shared fakes: a scripted interpreter, a manual clock and in-memory pages.

No real model is needed anywhere in the suite.
"""
from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Callable

import numpy as np
import pytest

from balloon_engine.config import EngineConfig
from balloon_engine.detector import BalloonDetector, DetectorLoad
from balloon_engine.index_store import BalloonIndexStore
from balloon_engine.interpreter import TensorSpec
from balloon_engine.orchestrator import IndexOrchestrator
from balloon_engine.pipeline import BalloonPipeline
from balloon_engine.types import Page, PageImage
from balloon_engine.workspace import create_workspace_dirs


# ═══════════════════════════════════════════════════════════════════════════════
# FAKES
# ═══════════════════════════════════════════════════════════════════════════════

class FakeInterpreter:
    """Interpreter returning whatever ``responder`` builds from the input buffer."""

    def __init__(
        self,
        output_specs: list[TensorSpec],
        responder: Callable[[np.ndarray], list[np.ndarray]],
        *,
        input_shape: tuple[int, ...] = (1, 32, 32, 3),
        input_dtype: str = "float32",
    ):
        self._input_spec = TensorSpec("images", input_shape, input_dtype)
        self._output_specs = list(output_specs)
        self.responder = responder
        self.calls: list[np.ndarray] = []
        self.closed = False

    @property
    def input_spec(self) -> TensorSpec:
        return self._input_spec

    @property
    def output_specs(self) -> list[TensorSpec]:
        return list(self._output_specs)

    def run(self, inputs: np.ndarray) -> list[np.ndarray]:
        self.calls.append(inputs)
        return self.responder(inputs)

    def close(self) -> None:
        self.closed = True


def channel_order_of(buf: np.ndarray) -> str:
    """Order of a buffer built from a red page (R high, B low)."""
    px = buf[0, 0, 0]
    return "rgb" if px[0] > px[2] else "bgr"


def flat_row(left: float, top: float, right: float, bottom: float, conf: float = 0.9, cls: int = 0) -> list[float]:
    """One flat-layout row (cx, cy, w, h, confidence, class id)."""
    return [(left + right) / 2.0, (top + bottom) / 2.0, right - left, bottom - top, conf, float(cls)]


def flat_interpreter(rows_for: Callable[[str], list[list[float]]], max_rows: int = 8) -> FakeInterpreter:
    """Flat 1 x N x 6 model; ``rows_for(channel_order)`` scripts its rows."""

    def respond(buf: np.ndarray) -> list[np.ndarray]:
        out = np.zeros((1, max_rows, 6), dtype=np.float32)
        rows = rows_for(channel_order_of(buf))
        if rows:
            out[0, : len(rows)] = np.asarray(rows, dtype=np.float32)
        return [out]

    return FakeInterpreter([TensorSpec("output", (1, max_rows, 6))], respond)


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class MemoryPageSource:
    """Solid red pages held in memory; listed page numbers fail to load."""

    def __init__(self, count: int, *, width: int = 200, height: int = 300, failing: set[int] | None = None):
        self.width = width
        self.height = height
        self.failing = failing or set()
        self.loads: list[int] = []
        self._pages = [Page(page_number=i + 1, page_id=f"page_{i + 1:03d}", source_ref=f"mem#{i + 1}") for i in range(count)]

    def pages(self) -> list[Page]:
        return list(self._pages)

    def load(self, page: Page) -> PageImage:
        self.loads.append(page.page_number)
        if page.page_number in self.failing:
            raise OSError(f"cannot decode page {page.page_number}")
        pixels = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        pixels[..., 0] = 220
        return PageImage(pixels=pixels)


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def workspace_dir() -> Path:
    """Create temporary workspace."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def paths(workspace_dir: Path):
    return create_workspace_dirs(workspace_dir)


@pytest.fixture
def engine_cfg() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def two_balloon_rows() -> list[list[float]]:
    """Two balloons side by side on one row."""
    return [flat_row(0.1, 0.1, 0.3, 0.2, conf=0.9), flat_row(0.6, 0.1, 0.8, 0.2, conf=0.8)]


@pytest.fixture
def make_orchestrator(paths, engine_cfg):
    """Factory: orchestrator over ``count`` memory pages and a scripted detector."""
    created: list[IndexOrchestrator] = []

    def _make(count: int = 3, rows: list[list[float]] | None = None, *, failing: set[int] | None = None,
              book_id: str = "book-1", available: bool = True):
        source = MemoryPageSource(count, failing=failing)
        if available:
            interp = flat_interpreter(lambda order: rows or [])
            load = DetectorLoad(detector=BalloonDetector(interp, engine_cfg.detector))
        else:
            load = DetectorLoad(detector=None, error="FileNotFoundError: model not found")
        pipeline = BalloonPipeline(source, load, engine_cfg, paths)
        orch = IndexOrchestrator(pipeline, BalloonIndexStore(paths), book_id, engine_cfg.index)
        created.append(orch)
        return orch, source

    yield _make
    for orch in created:
        orch.close()

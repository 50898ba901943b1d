from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

import numpy as np


class ObjectClass(IntEnum):
    SPEECH_BALLOON = 0
    PANEL = 1


class ReadingDirection(str, Enum):
    LTR = "ltr"
    RTL = "rtl"


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def contains(self, x: float, y: float) -> bool:
        return self.left <= x <= self.right and self.top <= y <= self.bottom

    def scaled(self, sx: float, sy: float, dx: float = 0.0, dy: float = 0.0) -> "Rect":
        return Rect(
            left=self.left * sx + dx,
            top=self.top * sy + dy,
            right=self.right * sx + dx,
            bottom=self.bottom * sy + dy,
        )

    def to_dict(self) -> dict[str, float]:
        return {"left": self.left, "top": self.top, "right": self.right, "bottom": self.bottom}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Rect":
        return cls(float(d["left"]), float(d["top"]), float(d["right"]), float(d["bottom"]))


@dataclass(frozen=True)
class DetectedObject:
    """One candidate detection with normalized (0..1) corner coordinates."""

    class_id: int
    confidence: float
    x_min: float
    y_min: float
    x_max: float
    y_max: float

    @property
    def width(self) -> float:
        return self.x_max - self.x_min

    @property
    def height(self) -> float:
        return self.y_max - self.y_min

    @property
    def area(self) -> float:
        return self.width * self.height

    def normalized_rect(self) -> Rect:
        return Rect(self.x_min, self.y_min, self.x_max, self.y_max)


@dataclass(frozen=True)
class Balloon:
    index: int  # 0-based position in reading order
    rect: Rect  # page pixel space
    normalized_rect: Rect  # 0..1
    confidence: float


@dataclass(frozen=True)
class PageBalloons:
    page_index: int
    balloons: tuple[Balloon, ...]
    page_width: int
    page_height: int

    @classmethod
    def empty(cls, page_index: int, page_width: int = 0, page_height: int = 0) -> "PageBalloons":
        return cls(page_index=page_index, balloons=(), page_width=page_width, page_height=page_height)

    def __len__(self) -> int:
        return len(self.balloons)


@dataclass(frozen=True)
class Page:
    page_number: int  # stable number supplied by the host pagination
    page_id: str  # e.g. page_003
    source_ref: str  # e.g. book.pdf#page=3


@dataclass
class PageImage:
    """Decoded page pixels (H x W x 3, uint8, RGB)."""

    pixels: np.ndarray
    width: int = field(init=False)
    height: int = field(init=False)

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            raise ValueError(f"expected HxWx3 pixels, got shape {self.pixels.shape}")
        self.height = int(self.pixels.shape[0])
        self.width = int(self.pixels.shape[1])

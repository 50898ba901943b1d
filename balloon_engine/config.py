from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .utils import load_json


# YOLOv4-tiny anchor table (pixel w,h at the model input size).
DEFAULT_ANCHORS: tuple[tuple[float, float], ...] = (
    (10.0, 14.0),
    (23.0, 27.0),
    (37.0, 58.0),
    (81.0, 82.0),
    (135.0, 169.0),
    (344.0, 319.0),
)
# One mask per output layer, indexing into DEFAULT_ANCHORS.
DEFAULT_ANCHOR_MASKS: tuple[tuple[int, ...], ...] = ((3, 4, 5), (1, 2, 3))


@dataclass(frozen=True)
class DetectorConfig:
    num_classes: int = 2  # speech_balloon=0, panel=1
    confidence_threshold: float = 0.25
    anchors: tuple[tuple[float, float], ...] = DEFAULT_ANCHORS
    anchor_masks: tuple[tuple[int, ...], ...] = DEFAULT_ANCHOR_MASKS
    # Tried in order until one yields detections.
    channel_orders: tuple[str, ...] = ("rgb", "bgr")
    default_input_size: int = 416


@dataclass(frozen=True)
class SuppressConfig:
    nms_threshold: float = 0.45
    # Balloon size relative to page dimension.
    min_size: float = 0.01
    max_size: float = 0.70
    # width / height
    min_aspect: float = 0.15
    max_aspect: float = 6.0


@dataclass(frozen=True)
class OrderConfig:
    reference_width: int = 1988
    reference_height: int = 3056
    # Pixel thresholds at the reference page size.
    panel_min_diff: float = 160.0  # reserved for panel-aware grouping, unused
    group_min_diff: float = 80.0  # reserved for panel-aware grouping, unused
    object_neighbour_min_diff: float = 20.0
    object_min_diff: float = 15.0


@dataclass(frozen=True)
class NavigationConfig:
    show_ms: int = 200
    hide_ms: int = 150
    # Fractions of the screen width bounding the middle tap zone.
    left_zone: float = 1.0 / 3.0
    right_zone: float = 2.0 / 3.0


@dataclass(frozen=True)
class IndexConfig:
    dir_name: str = "balloon_index"
    refresh_ahead: int = 1
    max_workers: int = 2


@dataclass(frozen=True)
class EngineConfig:
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    suppress: SuppressConfig = field(default_factory=SuppressConfig)
    order: OrderConfig = field(default_factory=OrderConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    index: IndexConfig = field(default_factory=IndexConfig)


def _section(cls: type, data: dict[str, Any] | None) -> Any:
    data = data or {}
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}

    # JSON has no tuples.
    if "anchors" in kwargs:
        kwargs["anchors"] = tuple((float(a[0]), float(a[1])) for a in kwargs["anchors"])
    if "anchor_masks" in kwargs:
        kwargs["anchor_masks"] = tuple(tuple(int(i) for i in m) for m in kwargs["anchor_masks"])
    if "channel_orders" in kwargs:
        kwargs["channel_orders"] = tuple(str(c).lower() for c in kwargs["channel_orders"])
    return cls(**kwargs)


def _require_unit(name: str, v: float) -> None:
    if not 0.0 <= float(v) <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {v}")


def validate_config(cfg: EngineConfig) -> EngineConfig:
    d = cfg.detector
    _require_unit("detector.confidence_threshold", d.confidence_threshold)
    if d.num_classes < 1:
        raise ValueError(f"detector.num_classes must be >= 1, got {d.num_classes}")
    if not d.channel_orders or any(c not in ("rgb", "bgr") for c in d.channel_orders):
        raise ValueError(f"detector.channel_orders must list rgb/bgr, got {d.channel_orders}")
    for mask in d.anchor_masks:
        for i in mask:
            if not 0 <= i < len(d.anchors):
                raise ValueError(f"detector.anchor_masks index {i} outside anchors table")

    s = cfg.suppress
    _require_unit("suppress.nms_threshold", s.nms_threshold)
    _require_unit("suppress.min_size", s.min_size)
    _require_unit("suppress.max_size", s.max_size)
    if s.min_size > s.max_size:
        raise ValueError("suppress.min_size must be <= suppress.max_size")
    if s.min_aspect > s.max_aspect:
        raise ValueError("suppress.min_aspect must be <= suppress.max_aspect")

    n = cfg.navigation
    if not 0.0 <= n.left_zone <= n.right_zone <= 1.0:
        raise ValueError("navigation zones must satisfy 0 <= left_zone <= right_zone <= 1")
    return cfg


def load_config(config_path: str | Path | None = None) -> EngineConfig:
    if config_path is None:
        return EngineConfig()
    data = load_json(config_path)
    if not isinstance(data, dict):
        raise ValueError(f"config must be a JSON object: {config_path}")
    cfg = EngineConfig(
        detector=_section(DetectorConfig, data.get("detector")),
        suppress=_section(SuppressConfig, data.get("suppress")),
        order=_section(OrderConfig, data.get("order")),
        navigation=_section(NavigationConfig, data.get("navigation")),
        index=_section(IndexConfig, data.get("index")),
    )
    return validate_config(cfg)

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .config import SuppressConfig
from .types import DetectedObject, ObjectClass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SuppressionResult:
    balloons: list[DetectedObject]
    # Panels survive suppression but nothing downstream consumes them yet.
    panels: list[DetectedObject]
    raw_count: int
    nms_count: int
    filter_skipped: bool


def compute_iou(a: DetectedObject, b: DetectedObject) -> float:
    """Intersection over Union of two normalized boxes."""
    ix0 = max(a.x_min, b.x_min)
    iy0 = max(a.y_min, b.y_min)
    ix1 = min(a.x_max, b.x_max)
    iy1 = min(a.y_max, b.y_max)

    iw = max(0.0, ix1 - ix0)
    ih = max(0.0, iy1 - iy0)
    intersection = iw * ih

    union = a.area + b.area - intersection
    if union <= 0.0:
        return 0.0
    return intersection / union


def non_max_suppression(detections: Iterable[DetectedObject], iou_threshold: float) -> list[DetectedObject]:
    """Greedy per-class NMS, keeping the highest confidence box of each cluster.

    Classes are emitted in order of first appearance.
    """
    by_class: dict[int, list[DetectedObject]] = {}
    for det in detections:
        by_class.setdefault(det.class_id, []).append(det)

    keep: list[DetectedObject] = []
    for class_dets in by_class.values():
        remaining = sorted(class_dets, key=lambda d: d.confidence, reverse=True)
        while remaining:
            best = remaining.pop(0)
            keep.append(best)
            remaining = [d for d in remaining if compute_iou(best, d) <= iou_threshold]
    return keep


def passes_noise_filter(det: DetectedObject, cfg: SuppressConfig) -> bool:
    w = det.width
    h = det.height
    valid_w = cfg.min_size <= w <= cfg.max_size
    valid_h = cfg.min_size <= h <= cfg.max_size
    aspect = w / h if h > 0 else 0.0
    valid_aspect = cfg.min_aspect <= aspect <= cfg.max_aspect
    return valid_w and valid_h and valid_aspect


def filter_noise(detections: list[DetectedObject], cfg: SuppressConfig) -> tuple[list[DetectedObject], bool]:
    """Drop implausibly sized boxes.

    Returns (kept, skipped). When every box would be dropped the filter is
    skipped and the input returned unchanged.
    """
    kept = [d for d in detections if passes_noise_filter(d, cfg)]
    if not kept and detections:
        return list(detections), True
    return kept, False


def suppress(detections: list[DetectedObject], cfg: SuppressConfig) -> SuppressionResult:
    nms = non_max_suppression(detections, cfg.nms_threshold)
    final, skipped = filter_noise(nms, cfg)

    logger.debug(
        "suppress: raw=%d nms=%d filtered=%d%s",
        len(detections),
        len(nms),
        len(final),
        " (filter skipped)" if skipped else "",
    )
    return SuppressionResult(
        balloons=[d for d in final if d.class_id == ObjectClass.SPEECH_BALLOON],
        panels=[d for d in final if d.class_id == ObjectClass.PANEL],
        raw_count=len(detections),
        nms_count=len(nms),
        filter_skipped=skipped,
    )

"""Reading-order sorting of detected balloons.

Balloons whose boxes nearly touch are grouped (connected components of the
neighbour relation); groups are read top-to-bottom, then by the reading
direction, and balloons inside a group row by row. Pixel thresholds are
defined for a reference page size and scaled to the actual page.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .config import OrderConfig
from .types import Balloon, DetectedObject, ObjectClass, PageBalloons, ReadingDirection, Rect


@dataclass(frozen=True)
class ScaledThresholds:
    neighbour: float
    row_band: float
    group: float  # reserved for panel-aware grouping
    panel: float  # reserved for panel-aware grouping


def page_scale(page_width: int, page_height: int, cfg: OrderConfig) -> float:
    scale_x = page_width / float(cfg.reference_width)
    scale_y = page_height / float(cfg.reference_height)
    return (scale_x + scale_y) / 2.0


def scaled_thresholds(page_width: int, page_height: int, cfg: OrderConfig) -> ScaledThresholds:
    s = page_scale(page_width, page_height, cfg)
    return ScaledThresholds(
        neighbour=cfg.object_neighbour_min_diff * s,
        row_band=cfg.object_min_diff * s,
        group=cfg.group_min_diff * s,
        panel=cfg.panel_min_diff * s,
    )


@dataclass(frozen=True)
class _Candidate:
    rect: Rect
    normalized: Rect
    confidence: float


def are_neighbors(a: Rect, b: Rect, threshold: float) -> bool:
    horizontal_gap = max(0.0, max(a.left, b.left) - min(a.right, b.right))
    vertical_gap = max(0.0, max(a.top, b.top) - min(a.bottom, b.bottom))
    return horizontal_gap <= threshold and vertical_gap <= threshold


def group_neighbors(rects: list[Rect], threshold: float) -> list[list[int]]:
    """Connected components of the neighbour relation, as index lists.

    Each group lists members in discovery order (breadth-first from the
    lowest unassigned index).
    """
    assigned = [False] * len(rects)
    groups: list[list[int]] = []
    for start in range(len(rects)):
        if assigned[start]:
            continue
        assigned[start] = True
        group = [start]
        i = 0
        while i < len(group):
            current = rects[group[i]]
            for other in range(len(rects)):
                if not assigned[other] and are_neighbors(current, rects[other], threshold):
                    assigned[other] = True
                    group.append(other)
            i += 1
        groups.append(group)
    return groups


def _horizontal_key(rect: Rect, direction: ReadingDirection) -> float:
    return rect.left if direction == ReadingDirection.LTR else -rect.right


def _group_key(rects: list[Rect], direction: ReadingDirection) -> tuple[float, float]:
    top = min(r.top for r in rects)
    if direction == ReadingDirection.LTR:
        return top, min(r.left for r in rects)
    return top, -max(r.right for r in rects)


def _banded_top(top: float, band: float) -> float:
    if band <= 0:
        return top
    return int(top / band) * band


def order_rects(rects: list[Rect], direction: ReadingDirection, thresholds: ScaledThresholds) -> list[int]:
    """Reading order of ``rects`` as a permutation of their indices."""
    if len(rects) <= 1:
        return list(range(len(rects)))

    groups = group_neighbors(rects, thresholds.neighbour)
    groups.sort(key=lambda g: _group_key([rects[i] for i in g], direction))

    order: list[int] = []
    for group in groups:
        order.extend(
            sorted(
                group,
                key=lambda i: (_banded_top(rects[i].top, thresholds.row_band), _horizontal_key(rects[i], direction)),
            )
        )
    return order


def generate_read_ordered_balloons(
    objects: Iterable[DetectedObject],
    page_width: int,
    page_height: int,
    direction: ReadingDirection,
    cfg: OrderConfig,
) -> list[Balloon]:
    """Speech balloons of ``objects`` in reading order, indexed 0..n-1.

    Non-balloon classes are ignored.
    """
    candidates = [
        _Candidate(
            rect=obj.normalized_rect().scaled(page_width, page_height),
            normalized=obj.normalized_rect(),
            confidence=obj.confidence,
        )
        for obj in objects
        if obj.class_id == ObjectClass.SPEECH_BALLOON
    ]
    if not candidates:
        return []

    thresholds = scaled_thresholds(page_width, page_height, cfg)
    order = order_rects([c.rect for c in candidates], direction, thresholds)
    return [
        Balloon(
            index=position,
            rect=candidates[i].rect,
            normalized_rect=candidates[i].normalized,
            confidence=candidates[i].confidence,
        )
        for position, i in enumerate(order)
    ]


def order_page(
    page_index: int,
    objects: Iterable[DetectedObject],
    page_width: int,
    page_height: int,
    direction: ReadingDirection,
    cfg: OrderConfig,
) -> PageBalloons:
    balloons = generate_read_ordered_balloons(objects, page_width, page_height, direction, cfg)
    return PageBalloons(
        page_index=page_index,
        balloons=tuple(balloons),
        page_width=int(page_width),
        page_height=int(page_height),
    )

"""Test reading-order sorting: grouping, banding and direction."""
from __future__ import annotations

import pytest

from balloon_engine.config import OrderConfig
from balloon_engine.ordering import (
    ScaledThresholds,
    are_neighbors,
    generate_read_ordered_balloons,
    group_neighbors,
    order_page,
    order_rects,
    page_scale,
    scaled_thresholds,
)
from balloon_engine.types import DetectedObject, ReadingDirection, Rect

LTR = ReadingDirection.LTR
RTL = ReadingDirection.RTL


def obj(x0: float, y0: float, x1: float, y1: float, cls: int = 0, conf: float = 0.9) -> DetectedObject:
    return DetectedObject(class_id=cls, confidence=conf, x_min=x0, y_min=y0, x_max=x1, y_max=y1)


@pytest.fixture
def cfg() -> OrderConfig:
    return OrderConfig()


@pytest.fixture
def ref_thresholds(cfg) -> ScaledThresholds:
    return scaled_thresholds(cfg.reference_width, cfg.reference_height, cfg)


# ═══════════════════════════════════════════════════════════════════════════════
# SCALING / GROUPING
# ═══════════════════════════════════════════════════════════════════════════════

class TestScaling:
    def test_reference_page_has_unit_scale(self, cfg):
        assert page_scale(1988, 3056, cfg) == pytest.approx(1.0)

    def test_half_size_page(self, cfg):
        t = scaled_thresholds(994, 1528, cfg)
        assert t.neighbour == pytest.approx(10.0)
        assert t.row_band == pytest.approx(7.5)


class TestGrouping:
    def test_neighbors_by_gap(self):
        a = Rect(0, 0, 100, 100)
        assert are_neighbors(a, Rect(115, 0, 200, 100), 20)
        assert not are_neighbors(a, Rect(125, 0, 200, 100), 20)
        assert are_neighbors(a, Rect(50, 50, 150, 150), 0)  # overlapping

    def test_transitive_closure(self):
        rects = [Rect(0, 0, 100, 100), Rect(500, 0, 600, 100), Rect(110, 0, 200, 100), Rect(210, 0, 300, 100)]
        groups = group_neighbors(rects, 20)
        assert sorted(sorted(g) for g in groups) == [[0, 2, 3], [1]]


# ═══════════════════════════════════════════════════════════════════════════════
# ORDERING
# ═══════════════════════════════════════════════════════════════════════════════

class TestReadingOrder:
    """Top-to-bottom, then by reading direction."""

    def test_same_row_ltr_and_rtl(self, cfg):
        objects = [obj(0.7, 0.1, 0.8, 0.2), obj(0.1, 0.1, 0.2, 0.2)]

        ltr = generate_read_ordered_balloons(objects, 1000, 1000, LTR, cfg)
        rtl = generate_read_ordered_balloons(objects, 1000, 1000, RTL, cfg)

        assert [b.normalized_rect.left for b in ltr] == [0.1, 0.7]
        assert [b.normalized_rect.left for b in rtl] == [0.7, 0.1]
        assert [b.index for b in ltr] == [0, 1]
        assert [b.index for b in rtl] == [0, 1]

    def test_direction_flip_reverses_single_row(self, cfg):
        objects = [obj(0.05 + 0.2 * i, 0.4, 0.15 + 0.2 * i, 0.5) for i in (3, 0, 4, 1, 2)]
        ltr = generate_read_ordered_balloons(objects, 2000, 3000, LTR, cfg)
        rtl = generate_read_ordered_balloons(objects, 2000, 3000, RTL, cfg)
        assert [b.rect for b in rtl] == [b.rect for b in reversed(ltr)]

    def test_groups_ordered_by_top(self, cfg):
        objects = [obj(0.1, 0.6, 0.3, 0.7), obj(0.6, 0.1, 0.8, 0.2)]
        balloons = generate_read_ordered_balloons(objects, 1988, 3056, LTR, cfg)
        assert [b.normalized_rect.top for b in balloons] == [0.1, 0.6]

    def test_band_treats_small_jitter_as_one_row(self, ref_thresholds):
        # Touching boxes form one group; tops 31 and 44 share the 30..45 band.
        rects = [Rect(300, 44, 500, 200), Rect(100, 31, 300, 200)]
        assert order_rects(rects, LTR, ref_thresholds) == [1, 0]
        assert order_rects(rects, RTL, ref_thresholds) == [0, 1]

    def test_band_boundary_splits_rows(self, ref_thresholds):
        rects = [Rect(100, 46, 300, 200), Rect(300, 44, 500, 200)]
        # 46 falls in the next band, so the higher box comes first in both directions.
        assert order_rects(rects, LTR, ref_thresholds) == [1, 0]
        assert order_rects(rects, RTL, ref_thresholds) == [1, 0]

    def test_panels_ignored(self, cfg):
        objects = [obj(0.0, 0.0, 0.5, 0.5, cls=1), obj(0.1, 0.1, 0.2, 0.2)]
        assert len(generate_read_ordered_balloons(objects, 1000, 1000, LTR, cfg)) == 1

    def test_order_page_dense_indices_and_pixel_rects(self, cfg):
        objects = [obj(0.1 * i, 0.1 * (i % 3), 0.1 * i + 0.05, 0.1 * (i % 3) + 0.05) for i in range(8)]
        page = order_page(4, objects, 800, 1200, RTL, cfg)

        assert page.page_index == 4
        assert (page.page_width, page.page_height) == (800, 1200)
        assert [b.index for b in page.balloons] == list(range(8))
        for b in page.balloons:
            assert b.rect == b.normalized_rect.scaled(800, 1200)

    def test_empty(self, cfg):
        assert generate_read_ordered_balloons([], 100, 100, LTR, cfg) == []

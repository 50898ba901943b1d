"""Test the balloon navigation state machine.

A manual clock drives the show/hide deadlines; nothing sleeps.
"""
from __future__ import annotations

import pytest

from balloon_engine.config import NavigationConfig
from balloon_engine.navigation import BalloonNavigator, DisplayLayout, NavigationSignal, OverlayState
from balloon_engine.types import Balloon, PageBalloons, ReadingDirection, Rect

from conftest import FakeClock

SHOWN = NavigationSignal.SHOWN
ADVANCE = NavigationSignal.ADVANCE_PAGE
RETREAT = NavigationSignal.RETREAT_PAGE
UNHANDLED = NavigationSignal.UNHANDLED


def make_page(count: int, page_index: int = 1) -> PageBalloons:
    balloons = []
    for i in range(count):
        norm = Rect(0.1 + 0.25 * i, 0.1, 0.3 + 0.25 * i, 0.3)
        balloons.append(Balloon(index=i, rect=norm.scaled(1000, 1500), normalized_rect=norm, confidence=0.9))
    return PageBalloons(page_index=page_index, balloons=tuple(balloons), page_width=1000, page_height=1500)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def nav(clock) -> BalloonNavigator:
    n = BalloonNavigator(NavigationConfig(), clock=clock)
    n.set_page_balloons(make_page(3))
    return n


# ═══════════════════════════════════════════════════════════════════════════════
# NEXT / PREVIOUS
# ═══════════════════════════════════════════════════════════════════════════════

class TestStepping:
    def test_next_visits_every_balloon_then_advances(self, nav):
        visited = []
        for _ in range(3):
            assert nav.next() == SHOWN
            visited.append(nav.cursor)
        assert visited == [0, 1, 2]
        assert nav.next() == ADVANCE
        assert nav.cursor == -1

    def test_previous_from_first_retreats(self, nav):
        nav.next()
        assert nav.previous() == RETREAT
        assert nav.cursor == -1

    def test_previous_from_none_retreats(self, nav):
        assert nav.previous() == RETREAT
        assert nav.cursor == -1

    def test_previous_steps_back(self, nav):
        nav.next()
        nav.next()
        assert nav.previous() == SHOWN
        assert nav.cursor == 0

    def test_empty_page_signals_immediately(self, clock):
        nav = BalloonNavigator(clock=clock)
        nav.set_page_balloons(PageBalloons.empty(1))
        assert nav.next() == ADVANCE
        assert nav.previous() == RETREAT


# ═══════════════════════════════════════════════════════════════════════════════
# OVERLAY TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class TestOverlayTiming:
    """Show 200ms, hide 150ms, resolved against the clock."""

    def test_show_settles_after_window(self, nav, clock):
        nav.next()
        assert nav.overlay_state == OverlayState.SHOWING
        assert nav.current_balloon.index == 0
        clock.advance_ms(199)
        assert nav.overlay_state == OverlayState.SHOWING
        clock.advance_ms(2)
        assert nav.overlay_state == OverlayState.VISIBLE
        assert nav.next_deadline is None

    def test_switch_waits_out_hide(self, nav, clock):
        nav.next()
        clock.advance_ms(300)
        nav.next()

        assert nav.cursor == 1
        assert nav.overlay_state == OverlayState.HIDING
        assert nav.current_balloon.index == 0  # outgoing balloon
        assert nav.next_deadline == pytest.approx(clock.now + 0.150)

        clock.advance_ms(150)
        assert nav.overlay_state == OverlayState.SHOWING
        assert nav.current_balloon.index == 1
        clock.advance_ms(200)
        assert nav.overlay_state == OverlayState.VISIBLE

    def test_new_request_cancels_pending_deadline(self, nav, clock):
        nav.next()
        clock.advance_ms(50)
        nav.hide()
        clock.advance_ms(500)
        assert nav.overlay_state == OverlayState.HIDDEN
        assert nav.current_balloon is None
        assert nav.cursor == 0

    def test_advance_hides_overlay(self, nav, clock):
        for _ in range(3):
            nav.next()
        clock.advance_ms(400)
        nav.next()
        assert nav.overlay_state == OverlayState.HIDING
        clock.advance_ms(150)
        assert nav.overlay_state == OverlayState.HIDDEN
        assert nav.is_idle


# ═══════════════════════════════════════════════════════════════════════════════
# TAPS / LONG PRESS / RESET
# ═══════════════════════════════════════════════════════════════════════════════

class TestTaps:
    def test_right_zone_is_next_in_ltr(self, nav):
        assert nav.handle_tap(900, 1000, ReadingDirection.LTR) == SHOWN
        assert nav.cursor == 0

    def test_left_zone_is_next_in_rtl(self, nav):
        assert nav.handle_tap(100, 1000, ReadingDirection.RTL) == SHOWN
        assert nav.cursor == 0
        assert nav.handle_tap(900, 1000, ReadingDirection.RTL) == RETREAT

    def test_middle_hides_when_visible(self, nav, clock):
        nav.next()
        clock.advance_ms(250)
        assert nav.handle_tap(500, 1000, ReadingDirection.LTR) == NavigationSignal.HIDDEN
        clock.advance_ms(150)
        assert not nav.overlay_visible
        assert nav.cursor == 0

    def test_middle_while_hiding_keeps_hide_deadline(self, nav, clock):
        nav.next()
        clock.advance_ms(250)
        nav.handle_tap(500, 1000, ReadingDirection.LTR)
        clock.advance_ms(100)
        assert nav.overlay_state == OverlayState.HIDING

        assert nav.handle_tap(500, 1000, ReadingDirection.LTR) == UNHANDLED
        clock.advance_ms(60)
        assert nav.overlay_state == OverlayState.HIDDEN

    def test_middle_passes_through_when_hidden(self, nav):
        assert nav.handle_tap(500, 1000, ReadingDirection.LTR) == UNHANDLED

    def test_no_balloons_is_unhandled(self, clock):
        nav = BalloonNavigator(clock=clock)
        assert nav.handle_tap(900, 1000, ReadingDirection.LTR) == UNHANDLED


class TestLongPress:
    def test_jumps_to_hit_balloon_visible_immediately(self, nav):
        layout = DisplayLayout(width=500, height=750, offset_x=20, offset_y=10)
        # Balloon 2 spans x 0.6..0.8 -> 320..420 on screen, y 0.1..0.3 -> 85..235.
        assert nav.handle_long_press(370, 100, layout) == SHOWN
        assert nav.cursor == 2
        assert nav.overlay_state == OverlayState.VISIBLE
        assert nav.current_balloon.index == 2

    def test_miss_is_unhandled(self, nav):
        layout = DisplayLayout(width=500, height=750)
        assert nav.handle_long_press(10, 700, layout) == UNHANDLED
        assert nav.cursor == -1


class TestReset:
    def test_new_list_resets_cursor_and_overlay(self, nav, clock):
        nav.next()
        nav.next()
        nav.set_page_balloons(make_page(5, page_index=2))

        assert nav.cursor == -1
        assert nav.overlay_state == OverlayState.HIDDEN
        assert nav.balloon_count == 5

    def test_clear(self, nav):
        nav.next()
        nav.clear()
        assert nav.balloon_count == 0
        assert nav.is_idle

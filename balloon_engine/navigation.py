"""Balloon-by-balloon navigation for the displayed page.

The navigator owns the cursor (-1 = no balloon selected) and the overlay
state. Show/hide animations are scheduled phases with monotonic start
times rather than sleeps: reading the state at time ``t`` returns the phase
active at ``t``, and any new request replaces the pending schedule.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .config import NavigationConfig
from .types import Balloon, PageBalloons, ReadingDirection, Rect


class OverlayState(str, Enum):
    HIDDEN = "hidden"
    SHOWING = "showing"
    VISIBLE = "visible"
    HIDING = "hiding"


class NavigationSignal(str, Enum):
    SHOWN = "shown"  # cursor moved to a balloon
    HIDDEN = "hidden"  # overlay dismissed, cursor kept
    ADVANCE_PAGE = "advance_page"
    RETREAT_PAGE = "retreat_page"
    UNHANDLED = "unhandled"  # caller decides (e.g. open settings)


@dataclass(frozen=True)
class DisplayLayout:
    """Where the page is drawn on screen, in screen pixels."""

    width: float
    height: float
    offset_x: float = 0.0
    offset_y: float = 0.0

    def balloon_rect(self, balloon: Balloon) -> Rect:
        return balloon.normalized_rect.scaled(self.width, self.height, self.offset_x, self.offset_y)


@dataclass(frozen=True)
class _Phase:
    start: float
    state: OverlayState
    balloon: Balloon | None


class BalloonNavigator:
    def __init__(self, cfg: NavigationConfig | None = None, *, clock: Callable[[], float] = time.monotonic):
        self.cfg = cfg or NavigationConfig()
        self._clock = clock
        self._page: PageBalloons | None = None
        self._cursor = -1
        self._schedule: list[_Phase] = [_Phase(start=float("-inf"), state=OverlayState.HIDDEN, balloon=None)]

    # ------------------------------------------------------------------ state

    @property
    def page(self) -> PageBalloons | None:
        return self._page

    @property
    def balloons(self) -> tuple[Balloon, ...]:
        return self._page.balloons if self._page is not None else ()

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def balloon_count(self) -> int:
        return len(self.balloons)

    def _active_phase(self) -> _Phase:
        now = self._clock()
        active = self._schedule[0]
        for phase in self._schedule:
            if phase.start <= now:
                active = phase
        return active

    @property
    def overlay_state(self) -> OverlayState:
        return self._active_phase().state

    @property
    def overlay_visible(self) -> bool:
        return self.overlay_state != OverlayState.HIDDEN

    @property
    def current_balloon(self) -> Balloon | None:
        """Balloon currently drawn by the overlay (the outgoing one while hiding)."""
        phase = self._active_phase()
        return None if phase.state == OverlayState.HIDDEN else phase.balloon

    @property
    def next_deadline(self) -> float | None:
        """Monotonic time of the next scheduled phase change, if any."""
        now = self._clock()
        pending = [p.start for p in self._schedule if p.start > now]
        return min(pending) if pending else None

    @property
    def is_idle(self) -> bool:
        return self._cursor == -1 and not self.overlay_visible

    # ------------------------------------------------------------ scheduling

    def _hide_phases(self, now: float) -> tuple[list[_Phase], float]:
        """Phases hiding the current overlay; returns them and their end time."""
        phase = self._active_phase()
        if phase.state == OverlayState.HIDDEN:
            return [], now
        end = now + self.cfg.hide_ms / 1000.0
        return [_Phase(now, OverlayState.HIDING, phase.balloon)], end

    def _schedule_show(self, balloon: Balloon) -> None:
        now = self._clock()
        phases, start = self._hide_phases(now)
        phases.append(_Phase(start, OverlayState.SHOWING, balloon))
        phases.append(_Phase(start + self.cfg.show_ms / 1000.0, OverlayState.VISIBLE, balloon))
        self._schedule = phases

    def _schedule_hide(self) -> None:
        now = self._clock()
        phases, end = self._hide_phases(now)
        phases.append(_Phase(end, OverlayState.HIDDEN, None))
        self._schedule = phases

    def _reset(self) -> None:
        self._cursor = -1
        self._schedule = [_Phase(float("-inf"), OverlayState.HIDDEN, None)]

    # ------------------------------------------------------------ transitions

    def set_page_balloons(self, page: PageBalloons | None) -> None:
        """Replace the balloon list; always resets cursor and overlay."""
        self._page = page
        self._reset()

    def clear(self) -> None:
        self.set_page_balloons(None)

    def next(self) -> NavigationSignal:
        balloons = self.balloons
        if not balloons:
            return NavigationSignal.ADVANCE_PAGE

        nxt = self._cursor + 1
        if nxt < len(balloons):
            self._cursor = nxt
            self._schedule_show(balloons[nxt])
            return NavigationSignal.SHOWN

        self._cursor = -1
        self._schedule_hide()
        return NavigationSignal.ADVANCE_PAGE

    def previous(self) -> NavigationSignal:
        balloons = self.balloons
        if not balloons:
            return NavigationSignal.RETREAT_PAGE

        if self._cursor > 0:
            self._cursor -= 1
            self._schedule_show(balloons[self._cursor])
            return NavigationSignal.SHOWN

        self._cursor = -1
        self._schedule_hide()
        return NavigationSignal.RETREAT_PAGE

    def hide(self) -> NavigationSignal:
        self._schedule_hide()
        return NavigationSignal.HIDDEN

    def handle_tap(self, x: float, screen_width: float, direction: ReadingDirection) -> NavigationSignal:
        """Route a tap by horizontal zone: edges navigate, middle hides."""
        if not self.balloons or screen_width <= 0:
            return NavigationSignal.UNHANDLED

        frac = x / screen_width
        forward_on_right = direction == ReadingDirection.LTR
        if frac < self.cfg.left_zone:
            return self.previous() if forward_on_right else self.next()
        if frac > self.cfg.right_zone:
            return self.next() if forward_on_right else self.previous()
        if self.overlay_state in (OverlayState.SHOWING, OverlayState.VISIBLE):
            return self.hide()
        return NavigationSignal.UNHANDLED

    def find_balloon_at(self, x: float, y: float, layout: DisplayLayout) -> Balloon | None:
        for balloon in self.balloons:
            if layout.balloon_rect(balloon).contains(x, y):
                return balloon
        return None

    def select(self, balloon: Balloon) -> NavigationSignal:
        """Jump straight to ``balloon``, visible immediately."""
        if balloon.index >= self.balloon_count or self.balloons[balloon.index] != balloon:
            return NavigationSignal.UNHANDLED
        self._cursor = balloon.index
        self._schedule = [_Phase(self._clock(), OverlayState.VISIBLE, balloon)]
        return NavigationSignal.SHOWN

    def handle_long_press(self, x: float, y: float, layout: DisplayLayout) -> NavigationSignal:
        balloon = self.find_balloon_at(x, y, layout)
        if balloon is None:
            return NavigationSignal.UNHANDLED
        return self.select(balloon)

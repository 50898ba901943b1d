from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Sequence

from PIL import Image

from .config import NavigationConfig
from .cropper import crop_balloon
from .navigation import BalloonNavigator, DisplayLayout, NavigationSignal, OverlayState
from .orchestrator import IndexOrchestrator
from .types import Balloon, Page, PageBalloons, ReadingDirection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReaderStatus:
    page_number: int | None
    current_balloon: Balloon | None
    cursor: int
    balloon_count: int
    overlay_state: OverlayState
    overlay_visible: bool
    progress: tuple[int, int]
    indexing: bool
    detector_available: bool
    last_error: str | None
    enabled: bool


class BalloonReaderSession:
    """What a reader UI talks to: one open book, one displayed page."""

    def __init__(
        self,
        orchestrator: IndexOrchestrator,
        nav_cfg: NavigationConfig | None = None,
        *,
        direction: ReadingDirection = ReadingDirection.LTR,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.navigator = BalloonNavigator(nav_cfg, clock=clock)
        self.direction = direction

        self._lock = threading.RLock()
        self._pages: list[Page] = []
        self._current: Page | None = None
        self._pending: PageBalloons | None = None
        self.live_detection: Future | None = None

        orchestrator.add_page_listener(self._on_page_updated)

    # ------------------------------------------------------------ lifecycle

    def open(self, pages: Sequence[Page], *, background: bool = True):
        with self._lock:
            self._pages = list(pages)
        return self.orchestrator.open_book(self._pages, self.direction, background=background)

    def close(self) -> None:
        with self._lock:
            self.navigator.clear()
            self._current = None
            self._pending = None
        self.orchestrator.close()

    def set_direction(self, direction: ReadingDirection) -> None:
        self.direction = direction

    def set_enabled(self, enabled: bool) -> None:
        self.orchestrator.set_enabled(enabled)
        with self._lock:
            if not enabled:
                self.navigator.clear()
                self._pending = None

    # ------------------------------------------------------------ pages

    @property
    def current_page(self) -> Page | None:
        return self._current

    def show_page(self, page: Page, *, refresh: bool = True, wait: bool = True) -> PageBalloons:
        """Make ``page`` the displayed page and load its balloons.

        With ``wait`` a page missing from the index is detected on the calling
        thread. UI threads should pass ``wait=False``: detection then runs on the
        orchestrator's workers, an empty page is returned, and the balloons are
        applied once they arrive (see ``live_detection``).
        """
        with self._lock:
            self._current = page
            self._pending = None
            self.navigator.clear()

        if not self.orchestrator.enabled:
            return PageBalloons.empty(page.page_number)

        if not wait and self.orchestrator.get_page(page.page_number) is None:
            self.live_detection = self.orchestrator.detect_live_async(page, self.direction)
            balloons = PageBalloons.empty(page.page_number)
        else:
            balloons = self.orchestrator.detect_live(page, self.direction)
            with self._lock:
                if self._current == page:
                    self.navigator.set_page_balloons(balloons)
        if refresh:
            self.orchestrator.schedule_refresh(page, self._pages or [page], self.direction)
        return balloons

    def _on_page_updated(self, page: PageBalloons) -> None:
        with self._lock:
            if self._current is None or page.page_index != self._current.page_number:
                return
            if page == self.navigator.page:
                return
            self._pending = page
            self._apply_pending()

    def _apply_pending(self) -> None:
        # Only swap the list while nothing is being shown.
        if self._pending is not None and self.navigator.is_idle:
            logger.debug("page %d: applying updated balloons", self._pending.page_index)
            self.navigator.set_page_balloons(self._pending)
            self._pending = None

    # ------------------------------------------------------------ navigation

    def _navigate(self, action: Callable[[], NavigationSignal]) -> NavigationSignal:
        with self._lock:
            self._apply_pending()
            return action()

    def next(self) -> NavigationSignal:
        return self._navigate(self.navigator.next)

    def previous(self) -> NavigationSignal:
        return self._navigate(self.navigator.previous)

    def hide(self) -> NavigationSignal:
        return self._navigate(self.navigator.hide)

    def tap(self, x: float, screen_width: float) -> NavigationSignal:
        return self._navigate(lambda: self.navigator.handle_tap(x, screen_width, self.direction))

    def long_press(self, x: float, y: float, layout: DisplayLayout) -> NavigationSignal:
        return self._navigate(lambda: self.navigator.handle_long_press(x, y, layout))

    def crop_current(self) -> Image.Image | None:
        """Padded crop of the balloon at the cursor, or None."""
        with self._lock:
            page = self._current
            cursor = self.navigator.cursor
            balloons = self.navigator.balloons
        if page is None or cursor < 0 or cursor >= len(balloons):
            return None
        image = self.orchestrator.pipeline.source.load(page)
        return crop_balloon(image, balloons[cursor])

    def status(self) -> ReaderStatus:
        with self._lock:
            self._apply_pending()
            return ReaderStatus(
                page_number=self._current.page_number if self._current is not None else None,
                current_balloon=self.navigator.current_balloon,
                cursor=self.navigator.cursor,
                balloon_count=self.navigator.balloon_count,
                overlay_state=self.navigator.overlay_state,
                overlay_visible=self.navigator.overlay_visible,
                progress=self.orchestrator.progress,
                indexing=self.orchestrator.indexing,
                detector_available=self.orchestrator.detector_available,
                last_error=self.orchestrator.last_error,
                enabled=self.orchestrator.enabled,
            )

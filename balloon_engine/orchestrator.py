"""Full indexing and background refresh of one book's balloon index.

Every detection result is stamped with a completion sequence number when it
finishes; an entry only replaces the in-memory one for its page when its stamp
is newer. A slow full-index pass therefore never overwrites a faster ad-hoc
or refresh result that completed after it, and vice versa.
"""
from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Sequence

from .config import IndexConfig
from .index_store import BalloonIndex, BalloonIndexStore
from .pipeline import BalloonPipeline
from .types import Page, PageBalloons, ReadingDirection
from .workspace import record_error

logger = logging.getLogger(__name__)

ProgressListener = Callable[[int, int], None]
PageListener = Callable[[PageBalloons], None]


class IndexOrchestrator:
    def __init__(
        self,
        pipeline: BalloonPipeline,
        store: BalloonIndexStore,
        book_id: str,
        cfg: IndexConfig | None = None,
        *,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.pipeline = pipeline
        self.store = store
        self.book_id = book_id
        self.cfg = cfg or IndexConfig()

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self.cfg.max_workers), thread_name_prefix="balloon-index"
        )

        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._seq = itertools.count(1)
        self._index = BalloonIndex(book_id=book_id)
        self._stamps: dict[int, int] = {}
        self._in_progress: set[int] = set()
        self._cancel = threading.Event()
        self._generation = 0
        self._enabled = True
        self._progress = (0, 0)
        self._indexing = False
        # True once the stored index covers the whole book
        self._complete = False
        self._last_error: str | None = None

        self._progress_listeners: list[ProgressListener] = []
        self._page_listeners: list[PageListener] = []

    # ------------------------------------------------------------ exposure

    @property
    def detector_available(self) -> bool:
        return self.pipeline.detector.available

    @property
    def last_error(self) -> str | None:
        return self._last_error or self.pipeline.detector.error

    @property
    def progress(self) -> tuple[int, int]:
        return self._progress

    @property
    def indexing(self) -> bool:
        return self._indexing

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def index(self) -> BalloonIndex:
        """Stable snapshot of the in-memory index."""
        with self._lock:
            return BalloonIndex(book_id=self.book_id, pages=dict(self._index.pages))

    def get_page(self, page_number: int) -> PageBalloons | None:
        with self._lock:
            return self._index.get(page_number)

    def refreshing(self, page_number: int) -> bool:
        with self._lock:
            return page_number in self._in_progress

    def add_progress_listener(self, fn: ProgressListener) -> None:
        self._progress_listeners.append(fn)

    def add_page_listener(self, fn: PageListener) -> None:
        self._page_listeners.append(fn)

    # ------------------------------------------------------------ internals

    def _next_stamp(self) -> int:
        with self._lock:
            return next(self._seq)

    def _commit(self, page: PageBalloons, stamp: int) -> bool:
        with self._lock:
            if stamp <= self._stamps.get(page.page_index, 0):
                logger.debug("page %d: stale result (stamp %d) dropped", page.page_index, stamp)
                return False
            pages = dict(self._index.pages)
            pages[page.page_index] = page
            self._index = BalloonIndex(book_id=self.book_id, pages=pages)
            self._stamps[page.page_index] = stamp

        for fn in list(self._page_listeners):
            fn(page)
        return True

    def _set_progress(self, done: int, total: int) -> None:
        self._progress = (done, total)
        for fn in list(self._progress_listeners):
            fn(done, total)

    def persist(self, generation: int | None = None) -> bool:
        """Write the in-memory index. Failures are recorded, never raised.

        Skipped when detection was disabled, or when ``generation`` is given
        and a cancel happened since.
        """
        with self._persist_lock:
            if not self._enabled or (generation is not None and generation != self._generation):
                logger.debug("book %s: index save skipped after cancel", self.book_id)
                return False
            snapshot = self.index
            try:
                self.store.save(self.book_id, snapshot)
            except OSError as e:
                self._last_error = f"index save failed: {e}"
                record_error(self.pipeline.paths, page=None, stage="index_save", message=str(e))
                return False
        return True

    def _claim(self, page_number: int) -> bool:
        with self._lock:
            if page_number in self._in_progress:
                return False
            self._in_progress.add(page_number)
            return True

    def _release(self, page_number: int) -> None:
        with self._lock:
            self._in_progress.discard(page_number)

    # ------------------------------------------------------------ operations

    def open_book(
        self, pages: Sequence[Page], direction: ReadingDirection, *, background: bool = True
    ) -> BalloonIndex | Future | None:
        """Use the stored index if there is one, else build it.

        Returns the loaded index, the future of a background build, or the
        built index when ``background`` is False.
        """
        stored = self.store.load(self.book_id)
        if stored is not None:
            with self._lock:
                self._index = BalloonIndex(book_id=self.book_id, pages=dict(stored.pages))
                self._stamps = {n: 0 for n in stored.pages}
            self._complete = True
            self._set_progress(len(stored), len(stored))
            logger.info("book %s: loaded index with %d pages", self.book_id, len(stored))
            return stored

        if not self.detector_available:
            logger.info("book %s: detector unavailable, indexing skipped", self.book_id)
            return None
        if background:
            return self.start_full_index(pages, direction)
        return self.build_index(pages, direction)

    def build_index(
        self,
        pages: Sequence[Page],
        direction: ReadingDirection,
        *,
        cancel: threading.Event | None = None,
        progress: ProgressListener | None = None,
    ) -> BalloonIndex | None:
        """Detect every page in order, then merge and persist once.

        Returns None when cancelled; nothing is merged or written then.
        """
        cancel = cancel or self._cancel
        generation = self._generation
        total = len(pages)
        collected: list[tuple[int, PageBalloons]] = []

        self._indexing = True
        try:
            self._set_progress(0, total)
            for i, page in enumerate(pages):
                if cancel.is_set() or not self._enabled:
                    logger.info("book %s: indexing cancelled at %d/%d", self.book_id, i, total)
                    return None
                result = self.pipeline.detect_page(page, direction)
                collected.append((self._next_stamp(), result))
                self._set_progress(i + 1, total)
                if progress is not None:
                    progress(i + 1, total)
        finally:
            self._indexing = False

        if cancel.is_set() or not self._enabled:
            return None
        for stamp, result in collected:
            self._commit(result, stamp)
        self._complete = True
        self.persist(generation)
        logger.info("book %s: indexed %d pages", self.book_id, total)
        return self.index

    def start_full_index(self, pages: Sequence[Page], direction: ReadingDirection) -> Future:
        return self._executor.submit(self.build_index, list(pages), direction)

    def refresh_page(self, page: Page, direction: ReadingDirection) -> PageBalloons | None:
        """Re-detect one page and merge it; None when skipped or superseded."""
        if not self._claim(page.page_number):
            logger.debug("page %d: refresh already running, skipped", page.page_number)
            return None
        return self._run_refresh(page, direction, self._generation)

    def _run_refresh(self, page: Page, direction: ReadingDirection, generation: int) -> PageBalloons | None:
        try:
            if generation != self._generation or not self._enabled:
                return None
            result = self.pipeline.detect_page(page, direction)
            stamp = self._next_stamp()
            if generation != self._generation or not self._enabled:
                return None
            if self._commit(result, stamp):
                if self._complete:
                    self.persist(generation)
                else:
                    # A partial file would stop the first full index from ever running.
                    logger.debug("page %d: kept in memory until the book is fully indexed", page.page_number)
            return result
        finally:
            self._release(page.page_number)

    def refresh_targets(self, current: Page, pages: Sequence[Page]) -> list[Page]:
        """The current page plus the next ``refresh_ahead`` pages."""
        numbers = [p.page_number for p in pages]
        if current.page_number not in numbers:
            return [current]
        at = numbers.index(current.page_number)
        return list(pages[at : at + 1 + max(0, self.cfg.refresh_ahead)])

    def schedule_refresh(
        self, current: Page, pages: Sequence[Page], direction: ReadingDirection
    ) -> list[Future]:
        if not self._enabled or not self.detector_available:
            return []
        futures = []
        generation = self._generation
        for page in self.refresh_targets(current, pages):
            if not self._claim(page.page_number):
                continue
            try:
                futures.append(self._executor.submit(self._run_refresh, page, direction, generation))
            except RuntimeError:
                # executor already shut down
                self._release(page.page_number)
                break
        return futures

    def detect_live(self, page: Page, direction: ReadingDirection) -> PageBalloons:
        """Indexed entry for ``page``, detecting it now when missing."""
        cached = self.get_page(page.page_number)
        if cached is not None:
            return cached
        result = self.pipeline.detect_page(page, direction)
        if self._enabled:
            self._commit(result, self._next_stamp())
        return result

    def detect_live_async(self, page: Page, direction: ReadingDirection) -> Future:
        """``detect_live`` on the worker pool; the result also reaches page listeners."""
        return self._executor.submit(self.detect_live, page, direction)

    def cancel(self) -> None:
        """Stop running loops at their next page boundary."""
        with self._lock:
            self._generation += 1
            self._cancel.set()
            self._cancel = threading.Event()

    def set_enabled(self, enabled: bool) -> None:
        if enabled:
            self._enabled = True
            return
        self._enabled = False
        self.cancel()
        with self._lock:
            self._index = BalloonIndex(book_id=self.book_id)
            self._stamps = {}
        self._complete = False
        self._set_progress(0, 0)
        with self._persist_lock:
            try:
                self.store.clear(self.book_id)
            except OSError as e:
                record_error(self.pipeline.paths, page=None, stage="index_clear", message=str(e))

    def close(self) -> None:
        self.cancel()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

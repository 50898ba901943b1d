from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import EngineConfig
from .detector import DetectorLoad
from .ordering import order_page
from .page_provider import PageSource
from .suppressor import suppress
from .types import Page, PageBalloons, PageImage, ReadingDirection
from .workspace import WorkspacePaths, record_error

logger = logging.getLogger(__name__)


@dataclass
class PageStats:
    raw: int = 0
    after_nms: int = 0
    balloons: int = 0
    filter_skipped: bool = False
    channel_order: str | None = None


class BalloonPipeline:
    """Detect -> suppress -> order for one page at a time.

    Fail-soft:
    - Page load and detection errors are recorded to errors.jsonl and the page
      comes back with an empty balloon list.
    - With no detector every page is empty.
    """

    def __init__(
        self,
        source: PageSource,
        detector: DetectorLoad,
        cfg: EngineConfig,
        paths: WorkspacePaths | None = None,
    ):
        self.source = source
        self.detector = detector
        self.cfg = cfg
        self.paths = paths
        self.last_stats = PageStats()

    def detect_image(self, page_number: int, image: PageImage, direction: ReadingDirection) -> PageBalloons:
        stats = PageStats()
        self.last_stats = stats
        if not self.detector.available:
            return PageBalloons.empty(page_number, image.width, image.height)

        detection = self.detector.require().detect(image.pixels)
        suppressed = suppress(detection.objects, self.cfg.suppress)
        page = order_page(page_number, suppressed.balloons, image.width, image.height, direction, self.cfg.order)

        stats.raw = suppressed.raw_count
        stats.after_nms = suppressed.nms_count
        stats.balloons = len(page)
        stats.filter_skipped = suppressed.filter_skipped
        stats.channel_order = detection.channel_order
        logger.info(
            "page %d: %d balloons (raw=%d nms=%d order=%s)",
            page_number,
            stats.balloons,
            stats.raw,
            stats.after_nms,
            stats.channel_order,
        )
        return page

    def detect_page(self, page: Page, direction: ReadingDirection) -> PageBalloons:
        try:
            image = self.source.load(page)
        except Exception as e:
            record_error(self.paths, page=page.page_number, stage="page_load", message=str(e))
            return PageBalloons.empty(page.page_number)

        try:
            return self.detect_image(page.page_number, image, direction)
        except Exception as e:
            record_error(self.paths, page=page.page_number, stage="detect", message=str(e))
            return PageBalloons.empty(page.page_number, image.width, image.height)

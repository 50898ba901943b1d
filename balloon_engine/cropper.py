from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from PIL import Image

from .types import Balloon, PageImage
from .utils import clamp_int
from .workspace import WorkspacePaths, record_error


@dataclass
class CropStats:
    balloons_seen: int = 0
    crops_written: int = 0
    crop_failures: int = 0


def balloon_crop_box(
    balloon: Balloon,
    *,
    w: int,
    h: int,
    padding_ratio: float = 0.05,
    min_padding_px: int = 2,
) -> tuple[int, int, int, int]:
    """Padded crop box (x0, y0, x1, y1) of ``balloon`` on a ``w`` x ``h`` image.

    Padding is ``padding_ratio`` of the balloon size per axis, at least
    ``min_padding_px``. The box is clamped to the image and never empty.
    """
    r = balloon.normalized_rect.scaled(w, h)
    pad_x = max(min_padding_px, int(r.width * padding_ratio))
    pad_y = max(min_padding_px, int(r.height * padding_ratio))

    x0 = clamp_int(int(r.left) - pad_x, 0, max(0, w - 1))
    y0 = clamp_int(int(r.top) - pad_y, 0, max(0, h - 1))
    x1 = clamp_int(int(r.right) + pad_x, x0 + 1, max(x0 + 1, w))
    y1 = clamp_int(int(r.bottom) + pad_y, y0 + 1, max(y0 + 1, h))
    return x0, y0, x1, y1


def crop_balloon(image: PageImage, balloon: Balloon, *, padding_ratio: float = 0.05, min_padding_px: int = 2) -> Image.Image:
    box = balloon_crop_box(
        balloon, w=image.width, h=image.height, padding_ratio=padding_ratio, min_padding_px=min_padding_px
    )
    return Image.fromarray(image.pixels).crop(box)


def write_balloon_crops(
    *,
    paths: WorkspacePaths | None,
    page_number: int,
    image: PageImage,
    balloons: tuple[Balloon, ...] | list[Balloon],
    out_dir: str | Path,
) -> tuple[list[Path], CropStats]:
    """Write one PNG per balloon as ``page_<n>_balloon_<i>.png``.

    Fail-soft:
    - Never raises for a single balloon; errors are recorded to errors.jsonl.
    """
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    stats = CropStats()
    written: list[Path] = []
    for balloon in balloons:
        stats.balloons_seen += 1
        target = out / f"page_{page_number:03d}_balloon_{balloon.index:03d}.png"
        try:
            crop_balloon(image, balloon).save(target, format="PNG")
            written.append(target)
            stats.crops_written += 1
        except (OSError, ValueError) as e:
            stats.crop_failures += 1
            record_error(paths, page=page_number, stage="balloon_crop", message=f"balloon_{balloon.index}: {e}")
    return written, stats

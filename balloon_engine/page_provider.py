from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any, Protocol

import numpy as np
from PIL import Image

from .types import Page, PageImage

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".tif", ".tiff"}


class PageSource(Protocol):
    def pages(self) -> list[Page]:
        ...

    def load(self, page: Page) -> PageImage:
        ...


def to_page_image(img: Image.Image) -> PageImage:
    return PageImage(pixels=np.asarray(img.convert("RGB"), dtype=np.uint8))


@dataclass
class ImageFolderPageSource:
    """Every image in one folder, sorted by file name, numbered from 1."""

    folder: Path
    _files: list[Path] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.folder = Path(self.folder)
        if not self.folder.exists() or not self.folder.is_dir():
            raise ValueError(f"--type images expects a folder: {self.folder}")
        self._files = sorted([p for p in self.folder.iterdir() if p.suffix.lower() in IMAGE_EXTS])

    def pages(self) -> list[Page]:
        return [
            Page(page_number=i + 1, page_id=f"page_{i + 1:03d}", source_ref=f"{self.folder.name}/{p.name}")
            for i, p in enumerate(self._files)
        ]

    def load(self, page: Page) -> PageImage:
        path = self._files[page.page_number - 1]
        with Image.open(path) as img:
            return to_page_image(img)


@dataclass
class PdfPageSource:
    """PDF pages rendered at ``dpi`` with PyMuPDF."""

    pdf_path: Path
    dpi: int = 150
    _doc: Any = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        try:
            import fitz  # PyMuPDF
        except Exception as e:  # pragma: no cover
            raise RuntimeError("PyMuPDF is required for --type pdf. Install pymupdf.") from e

        self.pdf_path = Path(self.pdf_path)
        self._doc = fitz.open(self.pdf_path)

    def pages(self) -> list[Page]:
        return [
            Page(page_number=i + 1, page_id=f"page_{i + 1:03d}", source_ref=f"{self.pdf_path.name}#page={i + 1}")
            for i in range(self._doc.page_count)
        ]

    def load(self, page: Page) -> PageImage:
        import fitz

        zoom = self.dpi / 72.0
        p = self._doc.load_page(page.page_number - 1)
        pix = p.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        with Image.open(BytesIO(pix.tobytes("png"))) as img:
            return to_page_image(img)

    def close(self) -> None:
        if self._doc is not None:
            self._doc.close()
            self._doc = None


def open_page_source(input_path: str | Path, input_type: str, *, dpi: int = 150) -> PageSource:
    if input_type == "pdf":
        return PdfPageSource(Path(input_path), dpi=dpi)
    if input_type == "images":
        return ImageFolderPageSource(Path(input_path))
    raise ValueError(f"Unknown input_type: {input_type}")

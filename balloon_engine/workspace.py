from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .utils import append_jsonl, ensure_dir, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkspacePaths:
    root: Path
    index_dir: Path  # one <book>.json per book
    crops_dir: Path
    errors_jsonl: Path


def create_workspace_dirs(workspace: str | Path, *, index_dir_name: str = "balloon_index") -> WorkspacePaths:
    ws = Path(workspace)
    index_dir = ws / index_dir_name
    crops_dir = ws / "crops"

    for p in [ws, index_dir]:
        ensure_dir(p)

    errors_jsonl = ws / "errors.jsonl"
    errors_jsonl.touch(exist_ok=True)

    return WorkspacePaths(
        root=ws,
        index_dir=index_dir,
        crops_dir=crops_dir,
        errors_jsonl=errors_jsonl,
    )


def record_error(paths: WorkspacePaths | None, page: int | None, stage: str, message: str) -> None:
    """Append one error record to errors.jsonl. Never raises."""
    logger.warning("%s failed (page=%s): %s", stage, page, message)
    if paths is None:
        return
    try:
        append_jsonl(paths.errors_jsonl, {"page": page, "stage": stage, "message": message, "at": utc_now_iso()})
    except OSError as e:
        logger.error("cannot write %s: %s", paths.errors_jsonl, e)

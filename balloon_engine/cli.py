from __future__ import annotations

import argparse
import json
import logging

from .config import EngineConfig, load_config
from .cropper import write_balloon_crops
from .detector import load_detector
from .index_store import BalloonIndexStore, count_page_records, validate_index
from .orchestrator import IndexOrchestrator
from .page_provider import open_page_source
from .pipeline import BalloonPipeline
from .types import ReadingDirection
from .workspace import WorkspacePaths, create_workspace_dirs


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="balloon_engine")
    p.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = p.add_subparsers(dest="command", required=True)

    def add_workspace(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--workspace", default="./workspace", help="Workspace root")
        sp.add_argument("--config", default=None, help="Config path (defaults built in)")

    def add_input(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--input", required=True, help="Input path (pdf file or images folder)")
        sp.add_argument("--type", required=True, choices=["pdf", "images"], help="Input type")
        sp.add_argument("--dpi", type=int, default=150, help="DPI for PDF rendering (pdf only)")

    index = sub.add_parser("index", help="Build (or load) the balloon index of a book")
    add_input(index)
    add_workspace(index)
    index.add_argument("--book-id", required=True, help="Stable book identifier")
    index.add_argument("--model", required=True, help="Detector model path (.onnx)")
    index.add_argument("--direction", default="ltr", choices=["ltr", "rtl"], help="Reading direction")
    index.add_argument("--force", action="store_true", help="Rebuild even if an index exists")

    show = sub.add_parser("show", help="Print the indexed balloons of one page")
    add_workspace(show)
    show.add_argument("--book-id", required=True)
    show.add_argument("--page", type=int, required=True, help="Page number (1-based)")

    crop = sub.add_parser("crop", help="Write the indexed balloons of one page as PNG crops")
    add_input(crop)
    add_workspace(crop)
    crop.add_argument("--book-id", required=True)
    crop.add_argument("--page", type=int, required=True, help="Page number (1-based)")
    crop.add_argument("--out", default=None, help="Output directory (default: <workspace>/crops)")

    validate = sub.add_parser("validate", help="Check a stored index against its invariants")
    add_workspace(validate)
    validate.add_argument("--book-id", required=True)

    clear = sub.add_parser("clear", help="Delete the stored index of a book")
    add_workspace(clear)
    clear.add_argument("--book-id", required=True)

    describe = sub.add_parser("describe", help="Describe a detector model's tensors and layout")
    describe.add_argument("--model", required=True, help="Detector model path (.onnx)")
    describe.add_argument("--config", default=None, help="Config path (defaults built in)")

    return p


def _open_store(args: argparse.Namespace) -> tuple[EngineConfig, WorkspacePaths, BalloonIndexStore]:
    cfg = load_config(args.config)
    paths = create_workspace_dirs(args.workspace, index_dir_name=cfg.index.dir_name)
    return cfg, paths, BalloonIndexStore(paths)


def cmd_index(args: argparse.Namespace) -> int:
    cfg, paths, store = _open_store(args)
    source = open_page_source(args.input, args.type, dpi=args.dpi)
    pages = source.pages()

    load = load_detector(args.model, cfg.detector)
    if not load.available:
        print(f"detector_unavailable: {load.error}")
        return 1

    if args.force:
        store.clear(args.book_id)

    orch = IndexOrchestrator(BalloonPipeline(source, load, cfg, paths), store, args.book_id, cfg.index)
    orch.add_progress_listener(lambda done, total: print(f"progress={done}/{total}", flush=True))
    try:
        index = orch.open_book(pages, ReadingDirection(args.direction), background=False)
    finally:
        orch.close()
        load.require().close()

    if index is None:
        print("index_failed")
        return 1
    balloons = sum(len(p) for p in index.pages.values())
    print(f"pages={len(index)} balloons={balloons}")
    print(str(store.path_for(args.book_id)))
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    _, _, store = _open_store(args)
    index = store.load(args.book_id)
    if index is None:
        print("index_missing")
        return 1
    page = index.get(args.page)
    if page is None:
        print(f"page_not_indexed: {args.page}")
        return 1

    print(f"page={page.page_index} size={page.page_width}x{page.page_height} balloons={len(page)}")
    for b in page.balloons:
        r = b.rect
        print(f"{b.index}\t{b.confidence:.3f}\t{r.left:.0f},{r.top:.0f},{r.right:.0f},{r.bottom:.0f}")
    return 0


def cmd_crop(args: argparse.Namespace) -> int:
    _, paths, store = _open_store(args)
    index = store.load(args.book_id)
    page_balloons = index.get(args.page) if index is not None else None
    if page_balloons is None:
        print(f"page_not_indexed: {args.page}")
        return 1

    source = open_page_source(args.input, args.type, dpi=args.dpi)
    page = next((p for p in source.pages() if p.page_number == args.page), None)
    if page is None:
        print(f"page_not_found: {args.page}")
        return 1

    written, stats = write_balloon_crops(
        paths=paths,
        page_number=args.page,
        image=source.load(page),
        balloons=page_balloons.balloons,
        out_dir=args.out or paths.crops_dir,
    )
    for p in written:
        print(str(p))
    print(f"crops_written={stats.crops_written} crop_failures={stats.crop_failures}")
    return 0 if stats.crop_failures == 0 else 1


def cmd_validate(args: argparse.Namespace) -> int:
    _, _, store = _open_store(args)
    path = store.path_for(args.book_id)
    if not path.exists():
        print(f"missing: {path}")
        return 1

    errors: list[str] = []
    try:
        duplicates = {n: c for n, c in count_page_records(path).items() if c > 1}
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
        print(f"unreadable: {path}: {e}")
        return 1
    for n, c in sorted(duplicates.items()):
        errors.append(f"page {n}: {c} records")

    index = store.load(args.book_id)
    if index is None:
        print(f"unreadable: {path}")
        return 1
    errors.extend(validate_index(index))

    print(f"pages={len(index)}")
    print(f"violations={len(errors)}")
    if errors:
        for m in errors:
            print(m)
        return 1

    print("OK")
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    _, _, store = _open_store(args)
    removed = store.clear(args.book_id)
    print(f"cleared={str(removed).lower()}")
    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    load = load_detector(args.model, cfg.detector)
    if not load.available:
        print(f"detector_unavailable: {load.error}")
        return 1
    detector = load.require()
    print(detector.describe_model())
    detector.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.command == "index":
        return cmd_index(args)

    if args.command == "show":
        return cmd_show(args)

    if args.command == "crop":
        return cmd_crop(args)

    if args.command == "validate":
        return cmd_validate(args)

    if args.command == "clear":
        return cmd_clear(args)

    if args.command == "describe":
        return cmd_describe(args)

    raise SystemExit(2)


if __name__ == "__main__":
    raise SystemExit(main())

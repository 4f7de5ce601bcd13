# src/scanflow/cli.py
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import queue
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, TextIO

from tqdm import tqdm

from .config import PipelineConfig
from .derivatives import ImageDerivativeEngine
from .enhancements import EnhancementRegistry
from .exceptions import ScanflowError
from .logger import setup_logging
from .models import DocumentPage, Language, OptimizeOptions, ProcessingOptions, RecognitionResult
from .pdf_processor import DEFAULT_DPI, get_pdf_processor
from .pipeline import DocumentPipeline
from .utils import is_image_file, safe_fname

__all__ = ["collect_images", "main"]

logger = logging.getLogger("scanflow")


# Helpers

def collect_images(inputs: Iterable[Path]) -> List[Path]:
    """Expand directories into their image files, sorted by name. Files are kept as given."""
    images: List[Path] = []
    for item in inputs:
        item = Path(item)
        if item.is_dir():
            found = sorted(p for p in item.rglob("*") if p.is_file() and is_image_file(p))
            logger.info("Found %d images in %s", len(found), item)
            images.extend(found)
        elif item.is_file():
            images.append(item)
        else:
            logger.warning("Input does not exist, skipping, %s", item)
    return images


def _jsonable(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


def _write_record(out: TextIO, record: Dict[str, Any]) -> None:
    out.write(json.dumps(_jsonable(record), ensure_ascii=False) + "\n")
    out.flush()


def _open_output(path: Optional[Path]) -> TextIO:
    if path is None:
        return sys.stdout
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "w", encoding="utf-8")


def _build_config(args: argparse.Namespace, log_queue: queue.Queue) -> PipelineConfig:
    cfg_dict = {
        "endpoint_url": getattr(args, "endpoint", None),
        "api_key": getattr(args, "api_key", None),
        "constrained_device": getattr(args, "constrained", False),
        "max_workers": getattr(args, "workers", None),
        "request_timeout": getattr(args, "timeout", None),
        "output_dir": args.out_dir,
        "language": getattr(args, "language", None),
        "optimize_pages": not getattr(args, "no_optimize", False),
        "log_path": args.log_file,
        "log_performance": args.log_performance,
        "performance_log_path": args.performance_log_path,
        "log_queue": log_queue,
    }
    cfg_dict = {k: v for k, v in cfg_dict.items() if v is not None}
    return PipelineConfig.from_dict(cfg_dict)


# -------------------------------
# Commands
# -------------------------------

async def _cmd_optimize(args: argparse.Namespace, config: PipelineConfig, out: TextIO) -> int:
    engine = ImageDerivativeEngine(output_dir=config.output_dir)
    if args.document:
        options = OptimizeOptions.document()
    else:
        options = OptimizeOptions(
            max_width=args.max_width,
            max_height=args.max_height,
            quality=args.quality,
            target_size_bytes=args.target_kb * 1024,
        )
    for image in tqdm(args.images, desc="Optimizing", unit="img"):
        result = await engine.optimize(image, options)
        _write_record(out, {
            "source": image,
            "output": result.derivative.path,
            "width": result.derivative.width,
            "height": result.derivative.height,
            "original_size_bytes": result.original_size_bytes,
            "processed_size_bytes": result.processed_size_bytes,
            "compression_ratio": round(result.compression_ratio, 3),
            "attempts": result.attempts,
            "quality": result.quality,
        })
    return 0


async def _cmd_thumbnails(args: argparse.Namespace, config: PipelineConfig, out: TextIO) -> int:
    engine = ImageDerivativeEngine(output_dir=config.output_dir)
    for image in tqdm(args.images, desc="Thumbnails", unit="img"):
        thumbs = await engine.thumbnails(image)
        _write_record(out, {"source": image, **asdict(thumbs)})
    return 0


async def _cmd_enhance(args: argparse.Namespace, config: PipelineConfig, out: TextIO) -> int:
    registry = EnhancementRegistry(output_dir=config.output_dir)
    options = ProcessingOptions.full() if args.preset == "full" else ProcessingOptions.quick()
    bar = tqdm(total=len(args.images), desc="Enhancing", unit="img")
    results = await registry.batch_process(args.images, options, on_progress=lambda done, total, path: bar.update(1))
    bar.close()
    for image, result in zip(args.images, results):
        _write_record(out, {
            "source": image,
            "output": result.derivative.path,
            "applied_enhancements": result.applied_enhancements,
            "document_bounds": asdict(result.document_bounds) if result.document_bounds else None,
            "processing_time_ms": result.processing_time_ms,
        })
    return 0


async def _cmd_validate(args: argparse.Namespace, config: PipelineConfig, out: TextIO) -> int:
    registry = EnhancementRegistry(output_dir=config.output_dir)
    invalid = 0
    for image in args.images:
        validation = await registry.validate(image)
        if not validation.is_valid:
            invalid += 1
        _write_record(out, {"source": image, **asdict(validation)})
    return 1 if invalid else 0


async def _cmd_recognize(args: argparse.Namespace, config: PipelineConfig, out: TextIO) -> int:
    pipeline = DocumentPipeline(config)
    bar = tqdm(total=len(args.images), desc="Recognizing", unit="img")

    def _on_result(result: RecognitionResult) -> None:
        bar.update(1)

    try:
        results = await pipeline.recognize_many(args.images, config.language, on_result=_on_result)
    finally:
        bar.close()
        pipeline.close()

    failed = 0
    for image, result in zip(args.images, results):
        failed += 0 if result.ok else 1
        _write_record(out, {"source": image, **asdict(result)})
    logger.info("Recognized %d images, %d failed", len(results), failed)
    return 1 if failed else 0


def _pages_from_input(source: Path, config: PipelineConfig, dpi: int) -> List[DocumentPage]:
    if source.is_file() and source.suffix.lower() == ".pdf":
        render_dir = config.output_dir / f"{safe_fname(source.stem)}_pages"
        return get_pdf_processor().render_pages(source, dpi, render_dir)
    images = collect_images([source])
    return [DocumentPage(id=safe_fname(p.stem), image=p, order=i) for i, p in enumerate(images)]


async def _cmd_pages(args: argparse.Namespace, config: PipelineConfig, out: TextIO) -> int:
    pages = _pages_from_input(args.source, config, args.dpi)
    if not pages:
        logger.error("No pages found in %s", args.source)
        return 2

    pipeline = DocumentPipeline(config)
    bar = tqdm(total=len(pages), desc="Pages", unit="page")
    try:
        summary = await pipeline.process_document(
            pages, config.language, on_progress=lambda current, total: bar.update(1)
        )
    finally:
        bar.close()
        pipeline.close()

    for page in sorted(pages, key=lambda p: p.order):
        _write_record(out, {
            "page_id": page.id,
            "order": page.order,
            "state": type(page.state).__name__.lower(),
            "text": page.extracted_text,
            "error": getattr(page.state, "error", None),
        })
    if not summary.ok:
        logger.error("Stopped at page %s, %s", summary.failed_page_id, summary.error)
        return 1
    return 0


_COMMANDS = {
    "optimize": _cmd_optimize,
    "thumbnails": _cmd_thumbnails,
    "enhance": _cmd_enhance,
    "validate": _cmd_validate,
    "recognize": _cmd_recognize,
    "pages": _cmd_pages,
}


# -------------------------------
# CLI parsing
# -------------------------------

def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("-o", "--output", type=Path, help="Write JSONL records here instead of stdout")
    p.add_argument("--out-dir", type=Path, help="Directory for derived images")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging on the console")
    p.add_argument("--log-file", type=Path, help="Rotating log file")

    perf_group = p.add_argument_group("Performance logging")
    perf_group.add_argument("--log-performance", action="store_true", help="Enable performance logging to a file")
    perf_group.add_argument("--performance-log-path", type=Path, help="Path for the performance log JSONL file")


def _add_recognition(p: argparse.ArgumentParser) -> None:
    group = p.add_argument_group("Recognition")
    group.add_argument("-l", "--language", default=None, help="Language code, e.g. en, fr, or auto")
    group.add_argument("--endpoint", help="Recognition endpoint URL")
    group.add_argument("--api-key", help="Bearer token for the recognition endpoint")
    group.add_argument("-w", "--workers", type=int, help="Concurrent recognition requests")
    group.add_argument("--constrained", action="store_true", help="Memory-constrained device, one request at a time")
    group.add_argument("--timeout", type=float, help="Per-request timeout in seconds")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scanflow", description="scanflow, document capture and text recognition")
    subparsers = parser.add_subparsers(dest="command")

    p = subparsers.add_parser("optimize", help="Resize and recompress images under a size budget")
    p.add_argument("images", nargs="+", type=Path)
    p.add_argument("--max-width", type=int, default=1920)
    p.add_argument("--max-height", type=int, default=1920)
    p.add_argument("--quality", type=float, default=0.8, help="Starting JPEG quality, 0..1")
    p.add_argument("--target-kb", type=int, default=800, help="Target size in KiB")
    p.add_argument("--document", action="store_true", help="Use the document preset (1600px, 600 KiB)")
    _add_common(p)

    p = subparsers.add_parser("thumbnails", help="Create low, medium and high resolution previews")
    p.add_argument("images", nargs="+", type=Path)
    _add_common(p)

    p = subparsers.add_parser("enhance", help="Run the enhancement steps on images")
    p.add_argument("images", nargs="+", type=Path)
    p.add_argument("--preset", choices=["quick", "full"], default="full")
    _add_common(p)

    p = subparsers.add_parser("validate", help="Check whether images are good enough for recognition")
    p.add_argument("images", nargs="+", type=Path)
    _add_common(p)

    p = subparsers.add_parser("recognize", help="Extract text from images through the worker pool")
    p.add_argument("images", nargs="+", type=Path, help="Image files or directories")
    _add_recognition(p)
    _add_common(p)

    p = subparsers.add_parser("pages", help="Recognize a multi-page document page by page")
    p.add_argument("source", type=Path, help="A PDF or a directory of page images")
    p.add_argument("-d", "--dpi", type=int, default=DEFAULT_DPI, help="DPI to use for rendering PDF pages")
    p.add_argument("--no-optimize", action="store_true", help="Send page images without optimizing them first")
    _add_recognition(p)
    _add_common(p)

    return parser


# -------------------------------
# Entry points
# -------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    if hasattr(args, "images"):
        args.images = collect_images(args.images)
        if not args.images:
            parser.error("no input images found")

    try:
        language = getattr(args, "language", None)
        if language is not None:
            args.language = Language.parse(language)
        config = _build_config(args, queue.Queue(-1))
    except (ScanflowError, ValueError) as e:
        logger.error("Invalid configuration, %s", e)
        return 2

    listener = setup_logging(
        config.log_queue,
        level=logging.DEBUG if args.verbose else logging.INFO,
        file_path=config.log_path,
    )
    listener.start()

    out = None
    try:
        out = _open_output(args.output)
        return asyncio.run(_COMMANDS[args.command](args, config, out))
    except (ScanflowError, ValueError) as e:
        logger.error("%s", e)
        return 2
    finally:
        if out is not None and out is not sys.stdout:
            out.close()
        try:
            listener.stop()
        except Exception:
            pass


if __name__ == "__main__":
    sys.exit(main())

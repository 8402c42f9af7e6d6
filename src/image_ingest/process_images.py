#!/usr/bin/env python3
"""
Image ingestion CLI

Reads local images → Validates → Optimizes → Uploads to S3 with thumbnails
Runs files sequentially or in parallel under a concurrency limit
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as OptionsError

from .core import (
    BatchOptions,
    BatchProgress,
    ConfigurationError,
    OptimizationOptions,
    ProcessingOptions,
    ProcessingResult,
    ProcessingStatus,
    SourceFile,
    UploadContext,
    UploadOptions,
    ValidationOptions,
    format_file_size,
    get_logger,
    set_log_level,
)
from .core.factories import PipelineFactory
from .core.models import EXTENSION_MEDIA_TYPES, ProcessingStage
from .core.settings import IngestSettings


def add_process_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the arguments of the ``process`` command on ``parser``."""
    parser.add_argument("paths", nargs="+", help="Image files or directories to ingest")
    parser.add_argument("--bucket", default=None, help="Destination S3 bucket")
    parser.add_argument("--folder", default="", help="Folder prefix inside the bucket")
    parser.add_argument("--property-id", default=None, help="Property the images belong to")
    parser.add_argument("--agent-id", default=None, help="Agent uploading the images")
    parser.add_argument(
        "--sequential", action="store_true", help="Process one file at a time"
    )
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Files in flight at once in parallel mode (default: 3)",
    )
    parser.add_argument("--max-width", type=int, default=1920, help="Maximum output width")
    parser.add_argument("--max-height", type=int, default=1080, help="Maximum output height")
    parser.add_argument(
        "--quality", type=float, default=0.85, help="Encoder quality between 0 and 1"
    )
    parser.add_argument(
        "--format",
        default="auto",
        choices=["auto", "jpeg", "png", "webp"],
        help="Output format (default: auto)",
    )
    parser.add_argument(
        "--target-size",
        type=int,
        default=0,
        help="Target output size in bytes; 0 disables the search",
    )
    parser.add_argument("--sharpen", action="store_true", help="Apply the sharpening filter")
    parser.add_argument("--denoise", action="store_true", help="Apply the noise reduction filter")
    parser.add_argument("--keep-exif", action="store_true", help="Keep EXIF metadata")
    parser.add_argument("--no-thumbnails", action="store_true", help="Skip thumbnail generation")
    parser.add_argument(
        "--no-security-checks",
        action="store_true",
        help="Skip signature and embedded content checks",
    )
    parser.add_argument("--report", default=None, help="Write the JSON report to this file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parses command-line arguments for the image ingestion script.

    Returns:
        An `argparse.Namespace` object containing the parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Validate, optimize and upload property images"
    )
    add_process_arguments(parser)
    return parser.parse_args(argv)


def build_options(args: argparse.Namespace, settings: IngestSettings) -> ProcessingOptions:
    """Translate CLI arguments into pipeline options."""
    try:
        return ProcessingOptions(
            validation=ValidationOptions(check_for_malware=not args.no_security_checks),
            optimization=OptimizationOptions(
                max_width=args.max_width,
                max_height=args.max_height,
                quality=args.quality,
                format=args.format,
                strip_exif=not args.keep_exif,
                target_file_size=args.target_size,
                enable_sharpening=args.sharpen,
                enable_noise_reduction=args.denoise,
            ),
            upload=UploadOptions(
                bucket=args.bucket or settings.bucket,
                folder=args.folder,
                generate_thumbnails=not args.no_thumbnails,
            ),
            batch=BatchOptions(
                enable_parallel_processing=not args.sequential,
                max_concurrent_uploads=(
                    settings.max_concurrent_uploads
                    if args.max_concurrent is None
                    else args.max_concurrent
                ),
            ),
        )
    except OptionsError as exc:
        raise ConfigurationError(f"Invalid options: {exc}") from exc


def load_files(paths: Sequence[str]) -> List[SourceFile]:
    """Read every image file named directly or found (non-recursively) in a directory."""
    files: List[SourceFile] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            candidates = sorted(
                p for p in path.iterdir()
                if p.is_file() and p.suffix.lower().lstrip(".") in EXTENSION_MEDIA_TYPES
            )
        elif path.is_file():
            candidates = [path]
        else:
            raise ConfigurationError(f"No such file or directory: {raw}")
        files.extend(SourceFile.from_path(candidate) for candidate in candidates)

    if not files:
        raise ConfigurationError("No image files found to process")
    return files


def log_configuration(options: ProcessingOptions, file_count: int) -> None:
    """Log processing configuration."""
    logger = get_logger("image-ingest.cli")
    mode = "parallel" if options.batch.enable_parallel_processing else "sequential"
    logger.info("=" * 80)
    logger.info("IMAGE INGESTION")
    logger.info("=" * 80)
    logger.info(f"  Files:          {file_count}")
    logger.info(f"  Destination:    s3://{options.upload.bucket}/{options.upload.folder}")
    logger.info(f"  Mode:           {mode} (max {options.batch.max_concurrent_uploads} in flight)")
    logger.info(
        f"  Output:         {options.optimization.format} "
        f"max {options.optimization.max_width}x{options.optimization.max_height} "
        f"quality {options.optimization.quality}"
    )
    logger.info(f"  Thumbnails:     {'on' if options.upload.generate_thumbnails else 'off'}")
    logger.info("=" * 80)


def log_progress(progress: BatchProgress) -> None:
    """Log one line per finished file."""
    if progress.stage is not ProcessingStage.DONE:
        return
    logger = get_logger("image-ingest.cli")
    done = progress.completed + progress.failed
    logger.info(
        f"Progress: {done}/{progress.total} ({progress.fraction_done * 100:.1f}%) - "
        f"Rate: {progress.throughput_per_sec:.2f} files/sec - "
        f"ETA: {progress.eta_ms / 1000:.1f}s - "
        f"Success: {progress.completed}, Errors: {progress.failed}"
    )


def build_report(
    results: Sequence[ProcessingResult],
    progress: Optional[BatchProgress],
    metrics: Dict[str, Any],
) -> Dict[str, Any]:
    return {
        "progress": progress.model_dump(mode="json") if progress else None,
        "metrics": metrics,
        "results": [result.model_dump(mode="json") for result in results],
    }


def log_final_statistics(results: Sequence[ProcessingResult]) -> None:
    """Log final processing statistics."""
    logger = get_logger("image-ingest.cli")
    errors = [r for r in results if r.status is ProcessingStatus.ERROR]
    original = sum(r.summary.original_bytes for r in results)
    final = sum(r.summary.final_bytes for r in results if r.status is not ProcessingStatus.ERROR)

    logger.info("=" * 80)
    logger.info("PROCESSING COMPLETED")
    logger.info("=" * 80)
    logger.info(f"Processed: {len(results) - len(errors)}, Errors: {len(errors)}")
    logger.info(f"Bytes in: {format_file_size(original)}, bytes stored: {format_file_size(final)}")
    for result in errors:
        logger.error(f"  {result.original_file.name}: {'; '.join(result.errors)}")
    logger.info("=" * 80)


def run(args: argparse.Namespace) -> int:
    """
    Run the ``process`` command and return the exit code: 1 when any file
    ended in error or the run could not start, otherwise 0.
    """
    logger = get_logger("image-ingest.cli")
    try:
        settings = IngestSettings()
        set_log_level("DEBUG" if args.debug else settings.log_level)

        options = build_options(args, settings)
        files = load_files(args.paths)
        log_configuration(options, len(files))

        pipeline = PipelineFactory.create_pipeline(settings=settings)
        context = UploadContext(property_id=args.property_id, agent_id=args.agent_id)
        results = asyncio.run(
            pipeline.process_images(files, options, context, on_progress=log_progress)
        )

        log_final_statistics(results)
        report = json.dumps(
            build_report(results, pipeline.last_progress, pipeline.metrics.get_summary()),
            indent=2,
        )
        if args.report:
            Path(args.report).write_text(report, encoding="utf-8")
            logger.info(f"Report written to {args.report}")
        else:
            print(report)

        return 1 if any(r.status is ProcessingStatus.ERROR for r in results) else 0

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Processing interrupted by user.")
        return 1


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point when the module is run as a script."""
    sys.exit(run(parse_args(argv)))


if __name__ == "__main__":
    main()

"""Main module for the image ingestion CLI."""

import argparse
import sys
from typing import Optional, Sequence

from .process_images import add_process_arguments, run

VERSION = "0.1.0"


def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    Entry point for the unified command-line interface (CLI).

    Sets up an `ArgumentParser` with the "process" and "version" commands.
    "process" shares its arguments with `process_images.py` and exits with
    the code returned by its `run` function.
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="image-ingest",
        description="Image ingestion - validate, optimize and upload property images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process a folder of photos with default settings (parallel, 3 in flight)
  image-ingest process ./photos --bucket property-images --property-id 42

  # One at a time, pinned to JPEG with a 300KB target
  image-ingest process a.jpg b.png --sequential --format jpeg --target-size 307200

  # Show version
  image-ingest version
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    process_parser = subparsers.add_parser(
        "process", help="Validate, optimize and upload local image files"
    )
    add_process_arguments(process_parser)

    subparsers.add_parser("version", help="Show version information")

    args: argparse.Namespace = parser.parse_args(argv)

    if args.command == "process":
        sys.exit(run(args))

    elif args.command == "version":
        print("Image Ingest CLI")
        print(f"Version {VERSION}")
        print("Validation, optimization and bounded-concurrency upload of property images")
        sys.exit(0)

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()

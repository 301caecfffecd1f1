#!/usr/bin/env python3
"""Stream a local file (or stdin) into object storage.

Usage:
  .venv/bin/python scripts/stream_upload.py data.bin exports/data.bin
  cat data.bin | .venv/bin/python scripts/stream_upload.py - exports/data.bin --gzip

Connection, encryption and conditional-write options come from the usual
S3_* environment variables (or .env). Exit codes: 0 committed, 2 target
already exists, 3 retriable failure, 4 fatal failure.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import BinaryIO

from s3stream.app.services.object_writer import MultipartObjectWriter
from s3stream.common.config import Settings, get_settings
from s3stream.common.logging import setup_logging
from s3stream.domain.errors import (
    ConfigurationError,
    ConsistencyFaultError,
    RecoverableIOError,
    TargetExistsError,
)
from s3stream.infra.observability.metrics import start_metrics_server
from s3stream.infra.storage.client import StorageClient

EXIT_OK = 0
EXIT_EXISTS = 2
EXIT_RETRIABLE = 3
EXIT_FATAL = 4

DEFAULT_CHUNK_SIZE = 1024 * 1024


def stream_upload(
    source: BinaryIO,
    object_key: str,
    *,
    settings: Settings,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    storage_client: StorageClient | None = None,
) -> int:
    """Copy ``source`` into ``object_key`` and return the number of bytes read."""
    with MultipartObjectWriter(
        object_key, storage_client=storage_client, settings=settings
    ) as writer:
        while True:
            chunk = source.read(chunk_size)
            if not chunk:
                break
            writer.write(chunk)
        writer.commit()
        return writer.bytes_written


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Stream a file into object storage")
    parser.add_argument("source", help="Local file path, or '-' for stdin")
    parser.add_argument("key", help="Target object key inside S3_BUCKET")
    parser.add_argument("--bucket", default=None, help="Override S3_BUCKET")
    parser.add_argument(
        "--part-size",
        type=int,
        default=None,
        help="Override S3_PART_SIZE_BYTES",
    )
    parser.add_argument(
        "--gzip",
        action="store_true",
        help="Compress the stream with gzip before upload",
    )
    parser.add_argument(
        "--if-absent",
        action="store_true",
        help="Fail instead of overwriting an existing object",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Serve prometheus metrics on this port while uploading",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    overrides: dict[str, object] = {}
    if args.bucket:
        overrides["S3_BUCKET"] = args.bucket
    if args.part_size is not None:
        overrides["S3_PART_SIZE_BYTES"] = args.part_size
    if args.gzip:
        overrides["S3_COMPRESSION_TYPE"] = "gzip"
    if args.if_absent:
        overrides["S3_ENABLE_CONDITIONAL_WRITES"] = True
        if not settings.ROTATE_SCHEDULE_INTERVAL_MS:
            overrides["ROTATE_SCHEDULE_INTERVAL_MS"] = 1
    if overrides:
        try:
            settings = replace(settings, **overrides)
        except ValueError as exc:
            print(f"[FATAL] {exc}", file=sys.stderr)
            return EXIT_FATAL

    setup_logging(settings.LOG_LEVEL)
    startup_logger = logging.getLogger("s3stream.startup")
    if args.metrics_port is not None:
        start_metrics_server(args.metrics_port)
        startup_logger.info("metrics served on port %s", args.metrics_port)

    try:
        if args.source == "-":
            size = stream_upload(sys.stdin.buffer, args.key, settings=settings)
        else:
            with open(args.source, "rb") as handle:
                size = stream_upload(handle, args.key, settings=settings)
    except TargetExistsError as exc:
        print(f"[EXISTS] {exc}", file=sys.stderr)
        return EXIT_EXISTS
    except RecoverableIOError as exc:
        print(f"[FAILED] {exc}", file=sys.stderr)
        return EXIT_RETRIABLE if exc.retriable else EXIT_FATAL
    except (ConsistencyFaultError, ConfigurationError) as exc:
        print(f"[FATAL] {exc}", file=sys.stderr)
        return EXIT_FATAL
    except OSError as exc:
        print(f"[FATAL] cannot read {args.source}: {exc}", file=sys.stderr)
        return EXIT_FATAL

    print(f"Uploaded {size} bytes to s3://{settings.S3_BUCKET}/{args.key}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

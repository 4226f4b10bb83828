"""Upload a file through the ConnectHub upload endpoint and report progress."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

import httpx

from connecthub.uploads import FilePayload, UploadError, upload_to_supabase

logger = logging.getLogger(__name__)


def _print_progress(percent: int) -> None:
    bar = "#" * (percent // 5)
    sys.stderr.write(f"\r[{bar:<20}] {percent:3d}%")
    if percent >= 100:
        sys.stderr.write("\n")
    sys.stderr.flush()


async def run_upload(args: argparse.Namespace) -> dict[str, Any]:
    """Entry point used by the CLI wrapper."""

    file = FilePayload.from_path(args.file, content_type=args.content_type)
    headers: dict[str, str] = {}
    if args.token:
        headers["Authorization"] = f"Bearer {args.token}"

    started = time.perf_counter()
    async with httpx.AsyncClient(base_url=args.base_url, headers=headers, timeout=args.timeout) as http:
        result = await upload_to_supabase(
            http,
            file,
            args.bucket,
            args.folder,
            None if args.quiet else _print_progress,
            endpoint=args.endpoint,
        )
    return {
        **result.as_dict(),
        "bytes": file.size,
        "content_type": file.content_type,
        "duration_seconds": round(time.perf_counter() - started, 3),
    }


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("file", type=Path, help="Image or video file to upload")
    parser.add_argument("--base-url", default="http://localhost:8000", help="Service base URL")
    parser.add_argument("--endpoint", default="/api/upload", help="Upload endpoint path")
    parser.add_argument("--bucket", default="ft")
    parser.add_argument("--folder", default="uploads")
    parser.add_argument("--content-type", default=None, help="Override the guessed MIME type")
    parser.add_argument("--token", default=None, help="Bearer token sent with the request")
    parser.add_argument("--timeout", type=float, default=30.0, help="Request timeout in seconds")
    parser.add_argument("--quiet", action="store_true", help="Do not print progress")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not args.file.is_file():
        logger.error("file not found: %s", args.file)
        return 2

    try:
        summary = asyncio.run(run_upload(args))
    except UploadError as exc:
        logger.error("upload failed: %s", exc.message)
        return 1
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        logger.warning("interrupted by user")
        return 130

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

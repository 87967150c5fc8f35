"""
Command line uploader

    python -m resumable_uploader video.mp4 --api-url http://localhost:8000
    python -m resumable_uploader video.mp4 --legacy --state-dir ~/.uploads

Interrupted uploads resume on the next run with the same file: the server
keeps the session keyed by content hash (``--state-dir`` additionally
keeps legacy chunk paths across processes).
"""
import argparse
import asyncio
import logging
import sys

from .core.config import settings, UploaderConfig
from .models import FileSource, ProgressSnapshot
from .services import (
    InMemorySessionStore,
    JsonFileSessionStore,
    StorageApiClient,
    UploadOrchestrator,
    format_duration,
    format_speed,
)

logger = logging.getLogger("resumable_uploader")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resumable-upload",
        description="Resumable chunked upload to an object-storage backend",
    )
    parser.add_argument("file", help="Path of the file to upload")
    parser.add_argument("--api-url", default=settings.API_BASE_URL, help="Storage API base URL")
    parser.add_argument("--prefix", default=settings.API_PREFIX, help="API path prefix")
    parser.add_argument("--folder", default=settings.FOLDER_PATH, help="Destination folder")
    parser.add_argument("--chunk-size", type=int, default=None, help="Chunk size in bytes")
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel chunk uploads (1-8)")
    parser.add_argument("--legacy", action="store_true", help="Use the batch-id merge protocol")
    parser.add_argument("--check-existence", action="store_true", help="Ask the server for the hash first")
    parser.add_argument("--state-dir", default=settings.STATE_DIR, help="Directory for resumable upload state")
    return parser


class ProgressLogger:
    """Logs a line whenever the status text or whole percentage changes."""

    def __init__(self):
        self._last = None

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        key = (snapshot.status, snapshot.percentage)
        if key == self._last:
            return
        self._last = key
        logger.info(
            f"{snapshot.percentage:3d}% | {snapshot.status} | {format_speed(snapshot.speed)} | "
            f"elapsed {format_duration(snapshot.elapsed_seconds)} | ETA {format_duration(snapshot.eta_seconds)}"
        )


async def run_upload(args: argparse.Namespace) -> int:
    source = FileSource(args.file)
    config = UploaderConfig.from_settings(
        api_prefix=args.prefix,
        folder_path=args.folder,
        chunk_size=args.chunk_size,
        max_concurrency=args.concurrency,
        check_existence=True if args.check_existence else None,
        protocol="legacy" if args.legacy else None,
    )
    store = JsonFileSessionStore(args.state_dir) if args.state_dir else InMemorySessionStore()

    async with StorageApiClient(base_url=args.api_url, api_prefix=config.api_prefix) as api:
        orchestrator = UploadOrchestrator(api, config=config, store=store)
        orchestrator.subscribe(ProgressLogger())
        try:
            result = await orchestrator.upload(source)
        except asyncio.CancelledError:
            orchestrator.cancel("Interrupted")
            raise

    if result.is_success:
        logger.info(f"✅ {result.message}: {result.file_name} -> {result.file_url or 'stored'}")
        return 0
    logger.error(f"❌ {result.message}")
    return 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        return asyncio.run(run_upload(args))
    except FileNotFoundError as e:
        logger.error(f"❌ {e}")
        return 2
    except ValueError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        return 2
    except KeyboardInterrupt:
        logger.warning("Upload interrupted, run again with the same file to resume")
        return 130


if __name__ == "__main__":
    sys.exit(main())

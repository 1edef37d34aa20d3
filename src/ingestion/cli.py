"""Command-line interface for ingesting and reprocessing videos."""

import argparse
import asyncio

from src.utils.errors import VideoRAGError
from src.utils.logging import get_logger

from .config import get_config
from .pipeline import VideoPipeline
from .schemas import IngestionRequest, ReprocessResult, SourceKind

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Video ingestion pipeline - transcribe, chunk and embed videos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ingest a YouTube video for a creator
  python -m src.ingestion.cli ingest --kind youtube \\
      --reference https://youtu.be/dQw4w9WgXcQ --owner creator_123

  # Re-enter two videos at their earliest incomplete stage
  python -m src.ingestion.cli reprocess VIDEO_ID_1 VIDEO_ID_2

  # Re-chunk and re-embed a completed video from its stored transcript
  python -m src.ingestion.cli reprocess VIDEO_ID --force

  # Retry every failed video
  python -m src.ingestion.cli reprocess-failed

  # Recover videos stuck in a processing status for 30+ minutes
  python -m src.ingestion.cli recover-stuck --minutes 30
        """,
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    ingest = subcommands.add_parser("ingest", help="Ingest and process one video")
    ingest.add_argument(
        "--kind",
        required=True,
        choices=[kind.value for kind in SourceKind],
        help="Source kind of the reference",
    )
    ingest.add_argument("--reference", required=True, help="URL, id or storage path")
    ingest.add_argument("--owner", required=True, help="Creator id that owns the video")
    ingest.add_argument("--title", help="Optional title override")

    reprocess = subcommands.add_parser("reprocess", help="Reprocess videos by id")
    reprocess.add_argument("video_ids", nargs="+", help="Video ids to reprocess")
    reprocess.add_argument(
        "--force",
        action="store_true",
        help="Re-chunk and re-embed even if the video completed",
    )

    failed = subcommands.add_parser("reprocess-failed", help="Reprocess all failed videos")
    failed.add_argument("--owner", help="Only videos of this creator")

    stuck = subcommands.add_parser("recover-stuck", help="Recover videos stuck in processing")
    stuck.add_argument(
        "--minutes",
        type=int,
        help="Age threshold in minutes (default: STUCK_AFTER_MINUTES)",
    )
    return parser


def print_results(title: str, results: list[ReprocessResult]) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    if not results:
        print("No videos matched.")
    for result in results:
        resumed = f" (from {result.resumed_from.value})" if result.resumed_from else ""
        reason = f" - {result.error_reason}" if result.error_reason else ""
        marker = "✅" if result.status.value == "completed" else "❌"
        print(f"  {marker} {result.video_id}: {result.status.value}{resumed}{reason}")
    print("=" * 60 + "\n")


async def run(args: argparse.Namespace) -> int:
    config = get_config()
    pipeline = VideoPipeline.from_config(config)

    logger.info("cli_started", command=args.command)

    try:
        match args.command:
            case "ingest":
                request = IngestionRequest(
                    source_kind=SourceKind(args.kind),
                    source_locator=args.reference,
                    owner_id=args.owner,
                    title=args.title,
                )
                video = await pipeline.ingest_and_process(request)
                print(f"\nVideo {video.id}: {video.status.value}")
                if video.error_message:
                    print(f"Reason: {video.error_reason} - {video.error_message}")
                return 0 if video.status.value == "completed" else 1
            case "reprocess":
                results = await pipeline.reprocess_many(args.video_ids, force=args.force)
                print_results("Reprocess Results", results)
            case "reprocess-failed":
                results = await pipeline.reprocess_failed(owner_id=args.owner)
                print_results("Failed Video Reprocess Results", results)
            case "recover-stuck":
                results = await pipeline.recover_stuck(args.minutes)
                print_results("Stuck Video Recovery Results", results)
    except VideoRAGError as e:
        logger.warning("cli_command_failed", command=args.command, error_type=type(e).__name__)
        print(f"\n❌ {e.user_message} ({e})")
        return 1

    logger.info("cli_completed", command=args.command)
    return 0 if all(r.status.value == "completed" for r in results) else 1


def main() -> None:
    """CLI entry point for the ingestion pipeline."""
    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()

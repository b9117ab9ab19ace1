"""
CLI for chunk_sync.

Commands:
  chunk <path>          print the chunks found under a path (no network)
  sync <path>           sync a project into its turbopuffer namespace
  search <query> [path] semantic search over a synced project
  --chunk-only <path>   chunk without network calls and report timings
"""
import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from .chunker import chunk_files
from .config import get_settings
from .errors import ChunkSyncError, ConfigError
from .languages import resolve_allow_list, supported_languages
from .schemas import ChunkOptions, ChunkReport, SyncReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _chunk_options(args, hash_only: bool = False) -> ChunkOptions:
    settings = get_settings()
    languages = None
    if getattr(args, "languages", None):
        languages = [lang.strip() for lang in args.languages.split(",") if lang.strip()]
        resolve_allow_list(languages)
    return ChunkOptions(
        languages=languages,
        max_file_bytes=settings.MAX_FILE_BYTES,
        workers=settings.CHUNK_WORKERS,
        hash_only=hash_only,
        show_progress=getattr(args, "progress", False),
    )


def cmd_chunk(args) -> int:
    """Print `path:start-end <content>` for every chunk under a path."""
    path = Path(args.path)
    if not path.exists():
        logger.error(f"Path does not exist: {path}")
        return EXIT_USAGE
    try:
        options = _chunk_options(args, hash_only=args.hash_only)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_USAGE

    report = ChunkReport()
    chunks = chunk_files(path, options, report)
    for chunk in chunks:
        content = chunk.content if chunk.content is not None else "[no content]"
        print(f"{chunk.path}:{chunk.start_line}-{chunk.end_line} {content}")

    if report.warnings:
        logger.warning(f"Skipped {report.files_skipped} file(s) with errors")
    if not chunks:
        logger.error(f"No chunks found under {path}")
        return EXIT_FAILURE
    return EXIT_OK


def cmd_chunk_only(path_arg: str) -> int:
    """Chunk a tree with no network calls and log where the time went."""
    path = Path(path_arg)
    if not path.exists():
        logger.error(f"Path does not exist: {path}")
        return EXIT_USAGE

    settings = get_settings()
    options = ChunkOptions(max_file_bytes=settings.MAX_FILE_BYTES, workers=settings.CHUNK_WORKERS)
    report = ChunkReport()
    start = time.perf_counter()
    chunks = chunk_files(path, options, report)
    elapsed_ms = (time.perf_counter() - start) * 1000

    logger.info(f"Files:        {report.files_seen} ({report.files_chunked} with chunks, {report.files_skipped} skipped)")
    logger.info(f"Chunks:       {len(chunks)}")
    logger.info(f"Read time:    {report.read_time_ms:.1f} ms (summed over workers)")
    logger.info(f"Parse time:   {report.parse_time_ms:.1f} ms (summed over workers)")
    logger.info(f"Wall time:    {elapsed_ms:.1f} ms")
    print(f"Chunked {len(chunks)} chunks from {report.files_seen} files in {elapsed_ms:.0f} ms")
    return EXIT_OK if chunks else EXIT_FAILURE


def print_sync_report(report: SyncReport) -> None:
    print(f"Namespace:  {report.namespace}")
    print(f"Found:      {report.found} chunks")
    print(f"To upsert:  {report.to_upsert}")
    print(f"To delete:  {report.to_delete}")
    print(f"Unchanged:  {report.unchanged}")
    print(f"Applied:    {report.upserted} upserted, {report.deleted} deleted")
    if report.files_skipped:
        print(f"Skipped:    {len(report.files_skipped)} file(s)")
    if not report.ok:
        print(f"Sync incomplete: {report.failed} chunk(s) failed")
        for path in report.failed_paths:
            print(f"  {path}")


def cmd_sync(args) -> int:
    from .sync import sync

    path = Path(args.path)
    if not path.is_dir():
        logger.error(f"Not a directory: {path}")
        return EXIT_USAGE
    try:
        report = asyncio.run(sync(path, get_settings(), reset=args.reset))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_USAGE
    except ChunkSyncError as e:
        logger.error(f"Sync failed: {e}")
        return EXIT_FAILURE

    print_sync_report(report)
    return EXIT_OK if report.ok else EXIT_FAILURE


def cmd_search(args) -> int:
    from .search import format_results, semantic_search
    from .sync import build_clients

    settings = get_settings()
    try:
        embedder, store = build_clients(settings)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_USAGE

    try:
        hits = asyncio.run(semantic_search(args.query, args.path, embedder, store, top_k=args.max_count, settings=settings))
    except ValueError as e:
        logger.error(str(e))
        return EXIT_USAGE
    except ChunkSyncError as e:
        logger.error(f"Search failed: {e}")
        return EXIT_FAILURE
    finally:
        embedder.close()
        store.close()

    if hits:
        print(format_results(hits, show_scores=args.scores))
    return EXIT_OK if hits else EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chunk-sync",
        description="Chunk source trees into functions and keep a turbopuffer namespace in sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Supported languages: {', '.join(supported_languages())}

Examples:
  # Print the chunks of a project
  python -m chunk_sync.cli chunk ./my-project

  # Sync a project (needs VOYAGE_API_KEY and TURBOPUFFER_API_KEY)
  python -m chunk_sync.cli sync ./my-project

  # Search it
  python -m chunk_sync.cli search "where do we retry requests" ./my-project -m 5

  # Profile chunking only
  python -m chunk_sync.cli --chunk-only ./my-project
        """,
    )
    parser.add_argument(
        "--chunk-only",
        metavar="PATH",
        help="Chunk PATH without any network calls and report timings",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Verbose logging",
    )

    sub = parser.add_subparsers(dest="command")

    p_chunk = sub.add_parser("chunk", help="Print chunks found under a path")
    p_chunk.add_argument("path", help="File or directory to chunk")
    p_chunk.add_argument("--hash-only", action="store_true", help="Do not keep chunk content")
    p_chunk.add_argument("--languages", help="Comma-separated language allow-list")
    p_chunk.add_argument("--progress", action="store_true", help="Show a progress bar")

    p_sync = sub.add_parser("sync", help="Sync a project into the vector store")
    p_sync.add_argument("path", help="Directory inside the project")
    p_sync.add_argument("--reset", action="store_true", help="Delete the namespace before syncing")

    p_search = sub.add_parser("search", help="Semantic search over a synced project")
    p_search.add_argument("query", help="Natural language query")
    p_search.add_argument("path", nargs="?", default=".", help="Directory inside the project (default: .)")
    p_search.add_argument("--max-count", "-m", type=int, default=10, help="Number of results")
    p_search.add_argument("--scores", action="store_true", help="Show cosine distance per result")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.chunk_only:
        sys.exit(cmd_chunk_only(args.chunk_only))
    if args.command == "chunk":
        sys.exit(cmd_chunk(args))
    if args.command == "sync":
        sys.exit(cmd_sync(args))
    if args.command == "search":
        sys.exit(cmd_search(args))

    parser.print_help()
    sys.exit(EXIT_USAGE)


if __name__ == "__main__":
    main()

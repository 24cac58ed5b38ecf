"""Command-line entry points: run a worker, rebuild the directory index, clean caches.

Usage:
    gallery worker [--kinds thumbnail,zip,raw_preview] [--once]
    gallery rebuild-index [--source KEY] [--max-seconds N] [--force]
    gallery cleanup

Configuration comes from the environment (see gallery.config); a ``.env`` in
the working directory is loaded first.
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

from gallery.config import load_settings
from gallery.models.job import JobKind
from gallery.services.container import Services, build_services
from gallery.services.paths import PathValidationError
from gallery.services.worker import Worker

logger = logging.getLogger(__name__)


def _parse_kinds(raw: str | None) -> list[JobKind]:
    if not raw:
        return list(JobKind)
    try:
        return [JobKind(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _run_worker(services: Services, args: argparse.Namespace) -> int:
    worker = Worker(
        services.store,
        services.resolver,
        services.validator,
        services.settings,
        kinds=args.kinds,
        raw_validator=services.raw_validator,
    )
    if args.once:
        worked = worker.run_once()
        print("Processed jobs." if worked else "No pending jobs.")
        return 0
    worker.install_signal_handlers()
    worker.run_forever()
    return 0


def _run_rebuild(services: Services, args: argparse.Namespace) -> int:
    try:
        result = services.index_builder.rebuild(args.source, args.max_seconds, args.force)
    except PathValidationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    print(
        f"Index rebuild {result.status}: {result.directories_found} directories, "
        f"{result.thumbnails_found} with thumbnails ({result.duration_seconds:.1f}s)"
    )
    if result.reason:
        print(f"  {result.reason}")
    return 1 if result.status == "aborted" else 0


def _run_cleanup(services: Services, args: argparse.Namespace) -> int:
    summary = services.janitor.run()
    print(
        f"Cleanup done: {summary['expired_archives']} expired archive(s), "
        f"{summary['orphaned_archives']} orphaned archive(s), "
        f"{summary['orphaned_thumbnails']} orphaned thumbnail(s) removed."
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gallery", description="Gallery job queue tools.")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Claim and process queued jobs until stopped.")
    worker.add_argument(
        "--kinds",
        type=_parse_kinds,
        default=list(JobKind),
        help="Comma-separated job kinds to handle (default: all).",
    )
    worker.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    worker.set_defaults(handler=_run_worker)

    rebuild = sub.add_parser("rebuild-index", help="Rebuild the directory index.")
    rebuild.add_argument("--source", default=None, help="Only rebuild this source key.")
    rebuild.add_argument("--max-seconds", type=int, default=300, help="Time budget (60-3600).")
    rebuild.add_argument("--force", action="store_true", help="Rebuild even if the index is fresh.")
    rebuild.set_defaults(handler=_run_rebuild)

    cleanup = sub.add_parser("cleanup", help="Expire old archives and remove orphaned cache files.")
    cleanup.set_defaults(handler=_run_cleanup)
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
    )
    args = build_parser().parse_args(argv)
    services = build_services(load_settings())
    try:
        return args.handler(services, args)
    finally:
        services.engine.dispose()


if __name__ == "__main__":
    sys.exit(main())

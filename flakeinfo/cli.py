"""CLI entrypoints for flake-info commands."""

from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path
from typing import Callable, List, Sequence

from .config import FlakeInfoConfig, load_backend_settings, load_config
from .errors import ConfigError, FlakeInfoError
from .index.backend import HttpSearchBackend
from .index.publisher import GenerationCounter, Publisher
from .logging import configure_logging, get_logger
from .models import FlakeReference
from .orchestrator import Orchestrator, RunReport
from .retry import RetryPolicy
from .source import read_sources_file, resolve_nixpkgs


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Increase log verbosity for troubleshooting.",
    )
    parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help="Path to .flake-info.yml or the directory containing it.",
    )
    parser.add_argument(
        "--no-publish",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Evaluate and report without writing to the search backend.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flake-info",
        description="Extract package, app and option metadata from flakes into a search index.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", default=False)
    parser.add_argument("--config", default=".")
    parser.add_argument("--no-publish", action="store_true", default=False)
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    flake_parser = subparsers.add_parser("flake", help="Import a single flake reference.")
    _add_common_options(flake_parser)
    flake_parser.add_argument("reference", help="Flake reference, e.g. github:owner/repo.")

    sources_parser = subparsers.add_parser(
        "sources", help="Import every source listed in a TOML or JSON sources file."
    )
    _add_common_options(sources_parser)
    sources_parser.add_argument("path", type=Path, help="Sources file (.toml or .json).")

    nixpkgs_parser = subparsers.add_parser(
        "nixpkgs", help="Import the head of a nixpkgs channel (e.g. unstable, 24.05)."
    )
    _add_common_options(nixpkgs_parser)
    nixpkgs_parser.add_argument("channel")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service.")
    _add_common_options(serve_parser)
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    return parser


def build_orchestrator(
    config: FlakeInfoConfig,
    *,
    publish: bool,
    generations: GenerationCounter | None = None,
) -> Orchestrator:
    """Wire the orchestrator; publishing requires backend credentials.

    Orchestrators that may publish the same flakes concurrently must share
    ``generations``.
    """
    publisher = None
    if publish:
        settings = load_backend_settings()
        backend = HttpSearchBackend(settings, timeout=config.publish.request_timeout)
        publisher = Publisher(
            backend,
            index_prefix=config.publish.index_prefix,
            schema_version=config.publish.schema_version,
            batch_size=config.publish.batch_size,
            policy=RetryPolicy(
                max_attempts=config.publish.max_retries,
                initial_delay=config.publish.backoff,
            ),
        )
    return Orchestrator(config, publisher=publisher, generations=generations)


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for flake-info commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)
    logger = get_logger("cli")

    try:
        config = load_config(Path(args.config))
        if args.command == "serve":
            from .service import run_service

            run_service(config, host=args.host, port=args.port, publish=not args.no_publish)
            return
        references = _references_for(args, config)
        orchestrator = build_orchestrator(config, publish=not args.no_publish)
    except ConfigError as exc:
        parser.exit(2, f"flake-info: configuration error: {exc}\n")
    except FlakeInfoError as exc:
        parser.exit(1, f"flake-info: {exc}\nRun with --verbose for more details.\n")

    reports = _run_with_cancellation(
        lambda cancel: orchestrator.run_many(
            references, publish=not args.no_publish, cancel=cancel
        ),
        logger=logger,
    )
    for report in reports:
        print(report.summary())
        for warning in report.warnings:
            print(f"  warning: {warning}")
    if not all(report.ok for report in reports):
        parser.exit(1)


def _references_for(args: argparse.Namespace, config: FlakeInfoConfig) -> List[FlakeReference]:
    if args.command == "flake":
        return [FlakeReference.parse(args.reference)]
    if args.command == "nixpkgs":
        return [resolve_nixpkgs(args.channel).to_reference()]
    if args.command == "sources":
        references: List[FlakeReference] = []
        for source in read_sources_file(args.path):
            if source.type == "nixpkgs" and not source.git_ref:
                source = resolve_nixpkgs(source.channel or "unstable")
            references.append(source.to_reference())
        return references
    raise ConfigError(f"Unknown command {args.command}")  # pragma: no cover - argparse enforces choices


def _run_with_cancellation(
    job: Callable[[threading.Event], Sequence[RunReport]], *, logger
) -> Sequence[RunReport]:
    """Run ``job`` in a worker thread so Ctrl-C can cancel in-flight evaluations."""
    cancel = threading.Event()
    outcome: dict[str, object] = {}

    def _worker() -> None:
        try:
            outcome["reports"] = job(cancel)
        except BaseException as exc:  # re-raised on the main thread
            outcome["error"] = exc

    thread = threading.Thread(target=_worker, name="flakeinfo-run", daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(timeout=0.5)
        except KeyboardInterrupt:
            logger.warning("Interrupted; cancelling running evaluations")
            cancel.set()
    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome.get("reports", [])  # type: ignore[return-value]


if __name__ == "__main__":
    main(sys.argv[1:])

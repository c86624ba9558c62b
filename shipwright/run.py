from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import DEFAULT_CONFIG_PATH, PipelineSettings, load_config
from .errors import EXIT_CANCELLED, ConfigError
from .pipeline import BuildPipeline
from .utils import LockTimeoutError

logger = logging.getLogger("shipwright")


def _load_pipeline(args: argparse.Namespace) -> BuildPipeline:
    settings = PipelineSettings()
    overrides = {}
    if args.workspace:
        overrides["workspace"] = Path(args.workspace)
    if getattr(args, "publish", None) is not None:
        overrides["publish_enabled"] = args.publish
    if overrides:
        settings = settings.model_copy(update=overrides)

    config = load_config(args.config, settings)
    branch = args.branch or settings.branch
    if not branch:
        raise ConfigError("No branch identifier: pass --branch or set SHIPWRIGHT_BRANCH / BRANCH_NAME")
    build_number = getattr(args, "build_number", None) or settings.build_number
    return BuildPipeline(config, branch, build_number=build_number)


def cmd_run(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    outcome = pipeline.run()
    print(json.dumps(outcome.to_dict(), indent=2))
    if outcome.error is not None:
        logger.error("Pipeline failed at stage %s with exit code %d", outcome.failed_stage, outcome.exit_code)
    else:
        logger.info("Pipeline finished: %s", outcome.context.runtime_tag)
    return outcome.exit_code


def cmd_tags(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    for role, reference in pipeline.image_tags().items():
        print(f"{role}\t{reference}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    record = pipeline.last_run()
    if record is None:
        print(json.dumps({"branch": pipeline.branch, "state": "never-run"}, indent=2))
        return 0
    print(json.dumps(record, indent=2))
    return 0


def _cancel(signum, frame) -> None:
    raise KeyboardInterrupt(f"received signal {signum}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build, extract and package a service binary into a runtime image")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to the pipeline config file (JSON or YAML).",
    )
    parser.add_argument(
        "--workspace",
        default=None,
        help="Root directory for checkouts, artifacts and run records.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the full pipeline for a branch")
    run_parser.add_argument("--branch")
    run_parser.add_argument("--build-number")
    run_parser.add_argument(
        "--publish",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Override publish.enabled from the config file.",
    )
    run_parser.set_defaults(func=cmd_run)

    tags_parser = subparsers.add_parser("tags", help="Print the image tags computed for a branch")
    tags_parser.add_argument("--branch")
    tags_parser.set_defaults(func=cmd_tags)

    status_parser = subparsers.add_parser("status", help="Show the last run record for a branch")
    status_parser.add_argument("--branch")
    status_parser.set_defaults(func=cmd_status)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    signal.signal(signal.SIGTERM, _cancel)
    try:
        return args.func(args)
    except (ConfigError, LockTimeoutError) as exc:
        logger.error("%s", exc)
        return exc.exit_code
    except KeyboardInterrupt:
        # images and artifacts from finished stages are left in place
        logger.error("Pipeline cancelled")
        return EXIT_CANCELLED


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict

from .config import load_config
from .errors import PublishError, ValidationError
from .pipeline import PipelineContext, PublishPipeline
from .utils import write_outputs
from .versioning import classify

_OVERRIDE_FLAGS = (
    "role_identifier",
    "region",
    "registry_url",
    "repository_name",
    "version_label",
    "build_target",
    "build_context",
    "dockerfile",
    "cache_from",
    "cache_to",
    "web_identity_token_file",
    "push_concurrency",
    "workspace",
    "keep_runs",
)


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        name: getattr(args, name) for name in _OVERRIDE_FLAGS if getattr(args, name) is not None
    }
    if args.build_arg:
        overrides["build_args"] = args.build_arg
    return overrides


def cmd_tags(args: argparse.Namespace) -> int:
    tags = classify(args.version_label)
    print(json.dumps({"canonical": tags.canonical_tag, "major": tags.major_tag, "tags": list(tags.ordered())}, indent=2))
    return 0


def cmd_publish(args: argparse.Namespace) -> int:
    config = load_config(args.config, overrides=_overrides(args))
    context = PipelineContext(config=config)
    result = PublishPipeline(context).run()
    print(result.to_json())
    output_path = os.environ.get("GITHUB_OUTPUT")
    if output_path:
        write_outputs(output_path, result.to_outputs())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build a container image and publish it under derived tags")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    tags_parser = subparsers.add_parser("tags", help="Print the tags derived from a version label")
    tags_parser.add_argument("version_label")
    tags_parser.set_defaults(func=cmd_tags)

    publish_parser = subparsers.add_parser("publish", help="Authenticate, build, push and report")
    publish_parser.add_argument("--config", help="JSON or YAML settings file.")
    publish_parser.add_argument("--role-identifier", dest="role_identifier", help="Role to assume via web identity.")
    publish_parser.add_argument("--region", help="Region for the credential broker and registry.")
    publish_parser.add_argument("--registry-url", dest="registry_url", help="Registry host.")
    publish_parser.add_argument("--repository-name", dest="repository_name", help="Repository path.")
    publish_parser.add_argument("--version-label", dest="version_label", help="Version label; becomes the canonical tag.")
    publish_parser.add_argument(
        "--build-arg",
        dest="build_arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Build argument forwarded to the build engine (repeatable).",
    )
    publish_parser.add_argument("--build-target", dest="build_target", help="Build stage to target.")
    publish_parser.add_argument("--build-context", dest="build_context", help="Build context directory (default: .).")
    publish_parser.add_argument("--dockerfile", help="Dockerfile path relative to the context (default: Dockerfile).")
    publish_parser.add_argument("--cache-from", dest="cache_from", help="Cache-read backend selector.")
    publish_parser.add_argument("--cache-to", dest="cache_to", help="Cache-write backend selector.")
    publish_parser.add_argument(
        "--web-identity-token-file",
        dest="web_identity_token_file",
        help="File holding the federated identity token.",
    )
    publish_parser.add_argument("--push-concurrency", dest="push_concurrency", type=int, help="Parallel tag pushes.")
    publish_parser.add_argument("--workspace", help="Directory for run records and build metadata.")
    publish_parser.add_argument("--keep-runs", dest="keep_runs", type=int, help="Run record directories to keep (default: 20).")
    publish_parser.set_defaults(func=cmd_publish)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return args.func(args)
    except ValidationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except PublishError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

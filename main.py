# main.py
"""CLI entry point for the StoryForge AI orchestration layer."""

from __future__ import annotations

import argparse

from core.providers.catalog import available_providers
from models import RequestType
from orchestration.cli_runner import run


def _add_provider_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--provider",
        choices=[p.id.value for p in available_providers()],
        default=None,
        help="LLM provider (defaults to DEFAULT_PROVIDER)",
    )
    parser.add_argument("--model", default=None, help="Model id")
    parser.add_argument(
        "--api-key", default=None, help="API key (defaults to <PROVIDER>_API_KEY)"
    )
    parser.add_argument(
        "--endpoint", default=None, help="Local server endpoint for --provider local"
    )
    parser.add_argument("--temperature", type=float, default=None)
    parser.add_argument("--max-tokens", type=int, default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storyforge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Send one prompt to the LLM")
    _add_provider_arguments(generate)
    source = generate.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt", default=None, help="Prompt text")
    source.add_argument("--prompt-file", default=None, help="Read the prompt from a file")
    generate.add_argument(
        "--type",
        choices=[t.value for t in RequestType],
        default=RequestType.DRAFT.value,
        help="Request category; non-draft responses are parsed as JSON when possible",
    )
    generate.add_argument(
        "--stream", action="store_true", help="Print the response as it streams"
    )
    generate.add_argument(
        "--long-running",
        action="store_true",
        help="Use the extended timeout for multi-chapter generation",
    )

    refine = subparsers.add_parser(
        "refine", help="Critique and revise a chapter draft"
    )
    _add_provider_arguments(refine)
    refine.add_argument("draft_file", help="Path to the chapter draft")
    refine.add_argument("--project-id", default="default")
    refine.add_argument("--chapter-id", default=None)
    refine.add_argument("--project-title", default="")
    refine.add_argument("--chapter-title", default="")
    refine.add_argument("--chapter-summary", default="")
    refine.add_argument(
        "--output", default=None, help="Write the revised draft here instead of stdout"
    )
    refine.add_argument(
        "--store-dir",
        default=None,
        help="Directory for persisted improvement logs (in-memory if omitted)",
    )
    return parser


def main() -> None:
    """Parse command-line arguments and run the requested command."""
    args = build_parser().parse_args()
    raise SystemExit(run(args))


if __name__ == "__main__":
    main()

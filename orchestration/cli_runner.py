# orchestration/cli_runner.py
"""Command-line runner for single generations and self-refine cycles."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

import structlog

from config import settings
from core.ai_service import AIService, long_running_timeout
from core.cancellation import CancelToken
from core.providers.catalog import available_providers, detect_platform
from core.retry import RetryEvent
from core.security import encrypt_api_key
from models import AIRequest, AISettings, Provider, RequestType
from processing.self_refine import RefineContext, RefineState, SelfRefineWorkflow
from storage.file_manager import FileKeyValueStore
from storage.history import ImprovementLogStore
from utils.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_ai_settings(args: argparse.Namespace) -> AISettings:
    """Resolve provider settings from arguments, falling back to configuration.

    Raises ``ValueError`` when the provider is unknown or not usable on this
    platform.
    """
    provider = Provider(args.provider or settings.DEFAULT_PROVIDER)
    platform = detect_platform()
    if provider not in {p.id for p in available_providers(platform)}:
        raise ValueError(
            f"Provider '{provider.value}' is not available on the {platform.name} "
            "platform"
        )
    api_key = args.api_key or getattr(settings, f"{provider.name}_API_KEY", "")
    return AISettings(
        provider=provider,
        model=args.model or settings.DEFAULT_MODEL,
        api_keys={provider: encrypt_api_key(api_key)} if api_key else {},
        local_endpoint=args.endpoint,
        temperature=(
            args.temperature
            if args.temperature is not None
            else settings.DEFAULT_TEMPERATURE
        ),
        max_tokens=args.max_tokens or settings.DEFAULT_MAX_TOKENS,
    )


def _log_retry(event: RetryEvent) -> None:
    if event.exhausted:
        logger.info("Retries exhausted", attempt=event.attempt)
    else:
        logger.info(
            "Retry scheduled", attempt=event.attempt, delay_ms=event.delay_ms
        )


def _write_stdout(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


async def _generate(
    service: AIService, args: argparse.Namespace, ai_settings: AISettings
) -> int:
    if args.prompt_file:
        with open(args.prompt_file, encoding="utf-8") as f:
            prompt = f.read()
    else:
        prompt = args.prompt

    request = AIRequest(
        prompt=prompt,
        type=RequestType(args.type),
        settings=ai_settings,
        stream_sink=_write_stdout if args.stream else None,
        cancel_token=CancelToken(),
        timeout_seconds=long_running_timeout() if args.long_running else None,
    )
    response = await service.generate_content(request, on_retry=_log_retry)

    if args.stream:
        sys.stdout.write("\n")
    elif response.parsed is not None:
        print(json.dumps(response.parsed, ensure_ascii=False, indent=2))
    else:
        print(response.content)

    if response.cancelled:
        logger.info("Generation cancelled")
        return 130
    if response.error:
        print(response.error, file=sys.stderr)
        return 1
    if response.usage:
        logger.info(
            "Token usage",
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
            total_tokens=response.usage.total_tokens,
        )
    return 0


async def _refine(
    service: AIService, args: argparse.Namespace, ai_settings: AISettings
) -> int:
    with open(args.draft_file, encoding="utf-8") as f:
        draft = f.read()

    backend = FileKeyValueStore(args.store_dir) if args.store_dir else None
    log_store = ImprovementLogStore(backend)
    workflow = SelfRefineWorkflow(service, log_store)
    context = RefineContext(
        project_id=args.project_id,
        chapter_id=args.chapter_id
        or os.path.splitext(os.path.basename(args.draft_file))[0],
        draft=draft,
        project_title=args.project_title,
        chapter_title=args.chapter_title,
        chapter_summary=args.chapter_summary,
    )
    outcome = await workflow.run(context, ai_settings)

    if not outcome.ok:
        if outcome.error:
            print(outcome.error, file=sys.stderr)
        return 130 if outcome.state is RefineState.CANCELLED else 1

    if outcome.critique_summary:
        print(outcome.critique_summary, file=sys.stderr)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(outcome.revised_text)
        logger.info(
            f"Revised draft written to {args.output}",
            original_length=len(draft),
            revised_length=len(outcome.revised_text),
        )
    else:
        print(outcome.revised_text)
    return 0


async def _run(args: argparse.Namespace) -> int:
    try:
        ai_settings = build_ai_settings(args)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 2
    service = AIService()
    try:
        if args.command == "refine":
            return await _refine(service, args, ai_settings)
        return await _generate(service, args, ai_settings)
    finally:
        await service.aclose()


def run(args: argparse.Namespace) -> int:
    """Set up logging and run the requested command. Returns an exit code."""
    setup_logging()
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("StoryForge shutting down due to KeyboardInterrupt...")
        return 130
    except Exception as main_err:  # pragma: no cover - entry point catch
        logger.critical(
            "StoryForge encountered an unhandled exception: %s",
            main_err,
            exc_info=True,
        )
        return 1

"""Command line interface for the Ferry translator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import sys
from typing import Iterable, List, Optional

from .configuration import FerryConfig, get_settings
from .documents import discover_markdown_documents
from .errors import (
    AbortRequested,
    FerryError,
    NonInteractiveAbort,
    SourceFileNotFoundError,
    TranslationProviderConfigurationError,
)
from .policy import ErrorPolicy
from .providers import StreamingTranslationClient, build_client, configure_api_caller
from .structures import ApiOptions
from .translator import RunSummary, TranslationRunner, describe_losses, ensure_languages

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ferry",
        description=(
            "Translate folders of Markdown documents with a chat-completion model, "
            "keeping code blocks intact."
        ),
    )
    parser.add_argument(
        "source",
        nargs="?",
        help="Markdown file or folder to translate (default: FERRY_SOURCE_FOLDER).",
    )
    parser.add_argument(
        "-t",
        "--target-language",
        action="append",
        dest="target_languages",
        help="Destination language code; repeat for several (default: FERRY_TARGET_LANGUAGES).",
    )
    parser.add_argument(
        "-o",
        "--output-base",
        help="Folder receiving one sub-folder per language (default: the source's parent).",
    )
    parser.add_argument(
        "-p",
        "--provider",
        help="Translation provider identifier: openai, azure or echo (default: openai).",
    )
    parser.add_argument(
        "-m",
        "--model",
        help="Model or deployment name (default: FERRY_MODEL).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        help="Sampling temperature (default: FERRY_TEMPERATURE).",
    )
    parser.add_argument(
        "-f",
        "--fragment-size",
        type=int,
        help="Approximate maximum characters per request; 0 sends whole documents.",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=float,
        help="Minimum seconds between request starts; 0 disables rate limiting.",
    )
    parser.add_argument(
        "--prompt-file",
        help="Instruction template containing {{TARGET_LANGUAGE}}.",
    )
    parser.add_argument(
        "--confirm",
        action="store_true",
        help="Ask before translating each document.",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Disable prompts and stop automatically on repeated failures (suitable for CI).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show fragment previews and informational log messages.",
    )
    parser.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and stream lines for troubleshooting.",
    )
    return parser


def configure_logging(*, verbose: bool, provider_debug: bool) -> None:
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if provider_debug:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # The HTTP stack is chatty at INFO.
    for name in ("httpx", "httpcore", "openai"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


async def execute_translation(
    *,
    args: argparse.Namespace,
    settings: FerryConfig,
    provider_debug: bool,
) -> tuple[int, RunSummary | None, str | None]:
    """Execute a translation run and return the exit code, summary, and message."""

    source_value = args.source or settings.FERRY_SOURCE_FOLDER
    if not source_value:
        return 1, None, "A source file or folder is required (argument or FERRY_SOURCE_FOLDER)."
    source = pathlib.Path(source_value).expanduser().resolve()

    try:
        languages = ensure_languages(args.target_languages or settings.FERRY_TARGET_LANGUAGES)
    except FerryError as exc:
        return 1, None, f"{exc} Use -t/--target-language or FERRY_TARGET_LANGUAGES."

    output_value = args.output_base or settings.FERRY_OUTPUT_BASE_PATH
    output_base = (
        pathlib.Path(output_value).expanduser().resolve()
        if output_value
        else source.parent if source.is_dir() else source.parent.parent
    )
    prompt_value = args.prompt_file or settings.FERRY_PROMPT_FILE
    prompt_file = pathlib.Path(prompt_value).expanduser() if prompt_value else None

    interval = settings.FERRY_API_CALL_INTERVAL if args.interval is None else args.interval
    if args.interval is not None:
        settings = settings.model_copy(update={"FERRY_API_CALL_INTERVAL": interval})

    try:
        client = build_client(args.provider, settings, debug=provider_debug)
    except TranslationProviderConfigurationError as exc:
        return 1, None, str(exc)

    try:
        return await _run_with_client(
            client,
            args=args,
            settings=settings,
            source=source,
            output_base=output_base,
            languages=languages,
            prompt_file=prompt_file,
            interval=interval,
        )
    finally:
        await client.aclose()


async def _run_with_client(
    client: StreamingTranslationClient,
    *,
    args: argparse.Namespace,
    settings: FerryConfig,
    source: pathlib.Path,
    output_base: pathlib.Path,
    languages: List[str],
    prompt_file: pathlib.Path | None,
    interval: float,
) -> tuple[int, RunSummary | None, str | None]:
    try:
        documents = discover_markdown_documents(source, output_base, languages)
    except SourceFileNotFoundError as exc:
        return 1, None, str(exc)

    options = ApiOptions(
        model=args.model or settings.FERRY_MODEL,
        temperature=settings.FERRY_TEMPERATURE if args.temperature is None else args.temperature,
    )
    fragment_size = (
        settings.FERRY_FRAGMENT_SIZE if args.fragment_size is None else args.fragment_size
    )
    runner = TranslationRunner(
        call_api=configure_api_caller(client, interval),
        options=options,
        fragment_size=fragment_size,
        prompt_file=prompt_file,
        retry_budget=settings.FERRY_RETRY_BUDGET,
        verbose=args.verbose,
    )
    policy = ErrorPolicy(interactive=not args.non_interactive)

    try:
        summary = await runner.run(
            documents,
            policy=policy,
            confirm=args.confirm or settings.FERRY_DEBUG,
        )
    except NonInteractiveAbort as exc:
        return 2, None, str(exc)
    except AbortRequested:
        return 2, None, "Translation aborted at your request."
    except FerryError as exc:
        return 1, None, str(exc)

    return 0, summary, None


def print_summary(summary: RunSummary) -> None:
    """Output a friendly report once processing completes."""

    print("\nTranslation complete.")
    print(f"  Documents written: {len(summary.documents)}")
    if summary.skipped_documents:
        print(f"  Skipped:           {len(summary.skipped_documents)}")
    print(f"  Failed:            {summary.failed_documents}")
    print(f"  Elapsed time:      {summary.elapsed_seconds:.2f} seconds")

    notes: List[str] = [
        note for note in (describe_losses(document) for document in summary.documents) if note
    ]
    notes.extend(summary.error_messages)
    if notes:
        print("  Notes:")
        for message in notes:
            print(f"    - {message}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        settings = get_settings()
    except TranslationProviderConfigurationError as exc:
        print(exc)
        return 1
    provider_debug = bool(args.debug_provider or settings.FERRY_PROVIDER_DEBUG)
    configure_logging(verbose=args.verbose, provider_debug=provider_debug)

    try:
        exit_code, summary, message = asyncio.run(
            execute_translation(args=args, settings=settings, provider_debug=provider_debug)
        )
    except KeyboardInterrupt:
        print("Translation interrupted by user.")
        return 2

    if message:
        print(message)
    if summary:
        print_summary(summary)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

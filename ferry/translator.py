"""High-level orchestration for document translation."""

from __future__ import annotations

import asyncio
import logging
import pathlib
import re
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .documents import load_instruction, read_text_file, write_text_file
from .errors import (
    LENGTH_EXCEEDED_MESSAGE,
    STREAM_READ_ERROR_MESSAGE,
    ErrorCategory,
    FerryError,
    SourceFileNotFoundError,
    TranslationProviderError,
)
from .policy import ErrorPolicy, PolicyAction, prompt_to_continue
from .progress import ConsoleStatusLine, aggregate_statuses
from .providers import DEFAULT_RETRY_BUDGET, ApiCaller
from .segmenter import BLANK_LINE, split_at_blank_lines, split_in_half
from .structures import (
    ApiOptions,
    CallState,
    CallStatus,
    MarkdownDocument,
    StatusCallback,
    TranslationTarget,
)
from .vault import CodeBlockVault

logger = logging.getLogger(__name__)

# Failures that suggest the request itself was too large for the endpoint.
RESPLIT_PATTERN = re.compile(
    "|".join(re.escape(message) for message in (LENGTH_EXCEEDED_MESSAGE, STREAM_READ_ERROR_MESSAGE)),
    re.IGNORECASE,
)

FRAGMENT_PREVIEW_LENGTH = 30


def _ignore_status(status: CallStatus) -> None:
    return None


async def _cancel_unfinished(tasks: Sequence[asyncio.Future]) -> None:
    """Cancel sibling fragment calls once the document has already failed."""

    unfinished = [task for task in tasks if not task.done()]
    if not unfinished:
        return
    logger.info("Cancelling %d outstanding fragment calls.", len(unfinished))
    for task in unfinished:
        task.cancel()
    await asyncio.gather(*unfinished, return_exceptions=True)


class FragmentTranslator:
    """Translates fragments through a rate-limited caller.

    A fragment whose call fails for length or transport reasons is split in
    half and both halves are translated in its place, recursively. When a
    failed fragment cannot be split any more, its original text is kept.
    """

    def __init__(
        self,
        call_api: ApiCaller,
        instruction: str,
        options: ApiOptions,
        *,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
    ) -> None:
        self.call_api = call_api
        self.instruction = instruction
        self.options = options
        self.retry_budget = retry_budget
        self.untranslated_fragments: List[str] = []

    async def translate_multiple(
        self,
        fragments: Sequence[str],
        on_status: StatusCallback,
    ) -> str:
        statuses = [CallStatus.waiting() for _ in fragments]
        on_status(CallStatus.pending())

        def handle_new_status(index: int) -> StatusCallback:
            def update(status: CallStatus) -> None:
                statuses[index] = status
                on_status(CallStatus.pending(aggregate_statuses(statuses)))

            return update

        tasks = [
            asyncio.ensure_future(self.translate_one(fragment, handle_new_status(index)))
            for index, fragment in enumerate(fragments)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except TranslationProviderError:
            await _cancel_unfinished(tasks)
            raise

        final_result = BLANK_LINE.join(results)
        on_status(CallStatus.done(final_result))
        return final_result

    async def translate_one(self, text: str, on_status: StatusCallback) -> str:
        if not text.strip():
            on_status(CallStatus.done(text))
            return text

        on_status(CallStatus.waiting())
        result = await self.call_api(
            text,
            self.instruction,
            self.options,
            on_status,
            self.retry_budget,
        )

        if result.state is CallState.ERROR and RESPLIT_PATTERN.search(result.message):
            halves = split_in_half(text)
            if halves is None:
                logger.warning(
                    "Fragment of %d characters failed (%s) and cannot be split "
                    "further; keeping it untranslated.",
                    len(text),
                    result.message,
                )
                self.untranslated_fragments.append(text)
                return text
            logger.info(
                "Fragment of %d characters failed (%s); retrying as two halves.",
                len(text),
                result.message,
            )
            return await self.translate_multiple(list(halves), on_status)

        if result.state is CallState.ERROR:
            raise TranslationProviderError(result.message)
        return result.translation


@dataclass
class DocumentTranslation:
    """Translated text of one document plus what was lost on the way."""

    text: str
    total_fragments: int
    untranslated_fragments: int
    lost_code_blocks: List[str] = field(default_factory=list)


@dataclass
class DocumentSummary:
    """Report returned after processing a document."""

    input_path: pathlib.Path
    output_path: pathlib.Path
    target_language: str
    model: str | None
    total_fragments: int
    untranslated_fragments: int
    lost_code_blocks: List[str]
    elapsed_seconds: float


@dataclass
class RunSummary:
    """Report returned after processing every pending document."""

    documents: List[DocumentSummary] = field(default_factory=list)
    skipped_documents: List[pathlib.Path] = field(default_factory=list)
    error_messages: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def failed_documents(self) -> int:
        return len(self.error_messages)


class TranslationRunner:
    """Coordinates extraction, splitting, translation, and restoration."""

    def __init__(
        self,
        *,
        call_api: ApiCaller,
        options: ApiOptions,
        fragment_size: int,
        prompt_file: pathlib.Path | None = None,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
        verbose: bool = False,
        show_progress: bool = True,
        vault: CodeBlockVault | None = None,
    ) -> None:
        self.call_api = call_api
        self.options = options
        self.fragment_size = fragment_size
        self.prompt_file = prompt_file
        self.retry_budget = retry_budget
        self.verbose = verbose
        self.show_progress = show_progress
        self.vault = vault or CodeBlockVault()

    async def translate_text(
        self,
        markdown: str,
        instruction: str,
        on_status: StatusCallback = _ignore_status,
        *,
        fragments_hook: Callable[[List[str]], None] | None = None,
    ) -> DocumentTranslation:
        """Translate one Markdown text, keeping its code blocks verbatim."""

        extracted = self.vault.extract(markdown)
        fragments = split_at_blank_lines(extracted.working_text, self.fragment_size)
        if fragments_hook is not None:
            fragments_hook(fragments)

        translator = FragmentTranslator(
            self.call_api,
            instruction,
            self.options,
            retry_budget=self.retry_budget,
        )
        translated = await translator.translate_multiple(fragments, on_status)

        lost = [region.placeholder for region in self.vault.find_missing(translated, extracted.regions)]
        return DocumentTranslation(
            text=self.vault.restore(translated, extracted.regions),
            total_fragments=len(fragments),
            untranslated_fragments=len(translator.untranslated_fragments),
            lost_code_blocks=lost,
        )

    async def translate_file(
        self,
        *,
        input_path: pathlib.Path,
        output_path: pathlib.Path,
        target_language: str,
    ) -> DocumentSummary:
        start_time = time.time()

        markdown = read_text_file(input_path)
        instruction = load_instruction(self.prompt_file, target_language)

        print("")
        print(f"Translating {input_path.name} to {target_language}...")
        print(f"Model: {self.options.model}, Temperature: {self.options.temperature}")

        status_line = ConsoleStatusLine() if self.show_progress else _ignore_status
        result = await self.translate_text(
            markdown,
            instruction,
            status_line,
            fragments_hook=self._print_fragments,
        )

        write_text_file(output_path, result.text.rstrip("\n") + "\n")
        print(f"\nTranslation to {target_language} done! Saved to {output_path}.")

        return DocumentSummary(
            input_path=input_path,
            output_path=output_path,
            target_language=target_language,
            model=self.options.model,
            total_fragments=result.total_fragments,
            untranslated_fragments=result.untranslated_fragments,
            lost_code_blocks=result.lost_code_blocks,
            elapsed_seconds=time.time() - start_time,
        )

    def _print_fragments(self, fragments: List[str]) -> None:
        print(f"Fragments: {len(fragments)}")
        if not self.verbose:
            return
        for index, fragment in enumerate(fragments):
            print(f"{index}. {fragment[:FRAGMENT_PREVIEW_LENGTH]}...")
        print("")

    async def run(
        self,
        documents: Sequence[MarkdownDocument],
        *,
        policy: ErrorPolicy,
        confirm: bool = False,
        input_func: Callable[[str], str] = input,
    ) -> RunSummary:
        """Translate every pending document, continuing past failed ones."""

        start_time = time.time()
        summary = RunSummary()
        print(f"Total markdown files to translate: {len(documents)}")

        for count, document in enumerate(documents, start=1):
            print(f"Processing: {document.relative_path}")
            if confirm and not prompt_to_continue(
                "Do you want to translate this file?", input_func
            ):
                summary.skipped_documents.append(document.relative_path)
                continue

            for target in document.pending_translations:
                await self._translate_target(document, target, policy, summary)
            print(f"Count: {count}")

        summary.elapsed_seconds = time.time() - start_time
        return summary

    async def _translate_target(
        self,
        document: MarkdownDocument,
        target: TranslationTarget,
        policy: ErrorPolicy,
        summary: RunSummary,
    ) -> None:
        while True:
            try:
                document_summary = await self.translate_file(
                    input_path=document.full_path,
                    output_path=target.target_path,
                    target_language=target.language,
                )
            except (TranslationProviderError, SourceFileNotFoundError, OSError) as exc:
                category = (
                    ErrorCategory.TRANSLATION
                    if isinstance(exc, TranslationProviderError)
                    else ErrorCategory.FILE_IO
                )
                message = (
                    f"Translation of {document.relative_path} to {target.language} "
                    f"failed: {exc}"
                )
                action = policy.handle_error(category, message)
                if action is PolicyAction.RETRY:
                    continue
                summary.error_messages.append(message)
                return

            target.exists = True
            summary.documents.append(document_summary)
            policy.record_success()
            return


def ensure_languages(languages: Sequence[str]) -> List[str]:
    """Normalise and de-duplicate language codes, keeping their order."""

    seen: List[str] = []
    for language in languages:
        cleaned = language.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    if not seen:
        raise FerryError("At least one target language is required.")
    return seen


def describe_losses(summary: DocumentSummary) -> Optional[str]:
    """Return a note about untranslated text and lost code blocks, if any."""

    if not summary.untranslated_fragments and not summary.lost_code_blocks:
        return None
    notes = []
    if summary.untranslated_fragments:
        notes.append(f"{summary.untranslated_fragments} fragment(s) left untranslated")
    if summary.lost_code_blocks:
        notes.append("lost code blocks: " + ", ".join(summary.lost_code_blocks))
    return f"{summary.output_path}: " + "; ".join(notes)

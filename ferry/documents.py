"""Markdown document discovery and file access."""

from __future__ import annotations

import logging
import pathlib
import shutil
from typing import List, Sequence

from .errors import SourceFileNotFoundError
from .structures import MarkdownDocument, TranslationTarget

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = {".md", ".mdx"}
TARGET_LANGUAGE_TOKEN = "{{TARGET_LANGUAGE}}"

DEFAULT_INSTRUCTION_TEMPLATE = """\
Translate the Markdown document I send next into {{TARGET_LANGUAGE}}.

- Keep the Markdown structure, links, HTML tags and front matter keys unchanged.
- Tokens such as [[CODE_BLOCK_0]] stand for code blocks. Copy every one of them
  exactly as written, on its own line and in the same position.
- Do not translate URLs, file paths or inline code.
- Return only the translated document, without commentary or code fences around it.
"""


def read_text_file(path: pathlib.Path) -> str:
    """Read a UTF-8 text file, failing clearly when it does not exist."""

    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise SourceFileNotFoundError(f"File not found: {path}") from exc


def write_text_file(path: pathlib.Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def render_instruction(template: str, target_language: str) -> str:
    return template.replace(TARGET_LANGUAGE_TOKEN, target_language)


def load_instruction(prompt_file: pathlib.Path | None, target_language: str) -> str:
    """Return the instruction for one language from the prompt template."""

    template = read_text_file(prompt_file) if prompt_file else DEFAULT_INSTRUCTION_TEMPLATE
    return render_instruction(template, target_language)


def target_path_for_language(
    output_base: pathlib.Path,
    relative_path: pathlib.Path,
    language: str,
) -> pathlib.Path:
    return output_base / language / relative_path


def is_markdown(path: pathlib.Path) -> bool:
    return path.suffix.lower() in MARKDOWN_SUFFIXES


def copy_asset(
    source_path: pathlib.Path,
    relative_path: pathlib.Path,
    output_base: pathlib.Path,
    languages: Sequence[str],
) -> List[pathlib.Path]:
    """Copy a non-Markdown file into every language folder that lacks it."""

    copied: List[pathlib.Path] = []
    for language in languages:
        target_path = target_path_for_language(output_base, relative_path, language)
        if target_path.exists():
            logger.info("File already exists in %s folder: %s", language, relative_path)
            continue
        target_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copy2(source_path, target_path)
        except OSError as exc:
            logger.error("Failed to copy %s to %s folder: %s", relative_path, language, exc)
            continue
        logger.info("Copied %s to %s folder", relative_path, language)
        copied.append(target_path)
    return copied


def _iter_files(source: pathlib.Path) -> List[pathlib.Path]:
    if source.is_file():
        return [source]
    return sorted(path for path in source.rglob("*") if path.is_file())


def discover_markdown_documents(
    source: pathlib.Path,
    output_base: pathlib.Path,
    languages: Sequence[str],
    *,
    copy_assets: bool = True,
) -> List[MarkdownDocument]:
    """Collect Markdown documents that still miss at least one translation.

    ``source`` may be a folder, walked recursively, or a single file. Other
    files found in a folder are copied into each language folder unchanged.
    """

    if not source.exists():
        raise SourceFileNotFoundError(f"Source folder not found: {source}")

    root = source.parent if source.is_file() else source
    documents: List[MarkdownDocument] = []

    for path in _iter_files(source):
        relative_path = path.relative_to(root)
        if not is_markdown(path):
            if copy_assets:
                copy_asset(path, relative_path, output_base, languages)
            continue

        translations: List[TranslationTarget] = []
        for language in languages:
            target_path = target_path_for_language(output_base, relative_path, language)
            translations.append(
                TranslationTarget(
                    language=language,
                    target_path=target_path,
                    exists=target_path.exists(),
                )
            )
        document = MarkdownDocument(
            full_path=path,
            relative_path=relative_path,
            translations=translations,
        )
        if not document.pending_translations:
            logger.info("All translations exist for file: %s", relative_path)
            continue
        documents.append(document)

    return documents

"""Core data structures for the Ferry translator."""

from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional


class CallState(str, Enum):
    """Lifecycle states of a single fragment translation call."""

    WAITING = "waiting"
    PENDING = "pending"
    RETRYING = "retrying"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class CallStatus:
    """Snapshot of one fragment call, published on every transition.

    Only the fields relevant to ``state`` are meaningful: ``last_token`` for
    pending, ``note`` for retrying, ``message`` for error and ``translation``
    for done. A terminal status doubles as the result of the call.
    """

    state: CallState
    last_token: str = ""
    note: str = ""
    message: str = ""
    translation: str = ""

    @classmethod
    def waiting(cls) -> "CallStatus":
        return cls(CallState.WAITING)

    @classmethod
    def pending(cls, last_token: str = "") -> "CallStatus":
        return cls(CallState.PENDING, last_token=last_token)

    @classmethod
    def retrying(cls, note: str) -> "CallStatus":
        return cls(CallState.RETRYING, note=note)

    @classmethod
    def error(cls, message: str) -> "CallStatus":
        return cls(CallState.ERROR, message=message)

    @classmethod
    def done(cls, translation: str) -> "CallStatus":
        return cls(CallState.DONE, translation=translation)

    @property
    def is_terminal(self) -> bool:
        return self.state in (CallState.DONE, CallState.ERROR)


StatusCallback = Callable[[CallStatus], None]


@dataclass(frozen=True)
class ApiOptions:
    """Per-request model parameters."""

    model: Optional[str] = None
    temperature: float = 0.1


@dataclass(frozen=True)
class ProtectedRegion:
    """A verbatim span replaced by a placeholder during translation."""

    placeholder: str
    content: str


@dataclass
class ExtractedDocument:
    """Working text with its protected regions set aside."""

    working_text: str
    regions: List[ProtectedRegion] = field(default_factory=list)


@dataclass
class TranslationTarget:
    """Destination of one document in one language."""

    language: str
    target_path: pathlib.Path
    exists: bool = False


@dataclass
class MarkdownDocument:
    """A source document and the translations it should receive."""

    full_path: pathlib.Path
    relative_path: pathlib.Path
    translations: List[TranslationTarget] = field(default_factory=list)

    @property
    def pending_translations(self) -> List[TranslationTarget]:
        return [target for target in self.translations if not target.exists]

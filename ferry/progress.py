"""Rendering of fragment call statuses for the console."""

from __future__ import annotations

import sys
from typing import Sequence, TextIO

from .structures import CallState, CallStatus


def status_to_text(status: CallStatus) -> str:
    """Return a short, single-line description of one call status."""

    if status.state is CallState.WAITING:
        return "waiting"
    if status.state is CallState.PENDING:
        token = " ".join(status.last_token.split())
        return token or "pending"
    if status.state is CallState.RETRYING:
        return status.note or "retrying"
    if status.state is CallState.ERROR:
        return f"error: {status.message}"
    return "done"


def aggregate_statuses(statuses: Sequence[CallStatus]) -> str:
    """Join the statuses of sibling fragments into one composite line."""

    return "[" + ", ".join(status_to_text(status) for status in statuses) + "]"


class ConsoleStatusLine:
    """Keeps the latest status on one continuously rewritten terminal line."""

    CLEAR_PREVIOUS_LINE = "\x1b[1A\x1b[2K"

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout
        self.status = CallStatus.pending()
        self._started = False

    def __call__(self, status: CallStatus) -> None:
        self.status = status
        self.render()

    def render(self) -> None:
        if self._started:
            self.stream.write(self.CLEAR_PREVIOUS_LINE)
        self._started = True
        self.stream.write(status_to_text(self.status) + "\n")
        self.stream.flush()

"""Streaming translation clients for chat-completion endpoints."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
)

import httpx
from openai import APIStatusError, AsyncAzureOpenAI, AsyncOpenAI

from .configuration import FerryConfig, validate_provider_settings
from .errors import (
    LENGTH_EXCEEDED_MESSAGE,
    STREAM_READ_ERROR_MESSAGE,
    TranslationProviderConfigurationError,
)
from .limiter import limit_call_rate
from .structures import ApiOptions, CallStatus, StatusCallback

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a translator for Markdown documents."
ASSISTANT_ACKNOWLEDGEMENT = (
    "Okay, input the Markdown.\n" "I will only return the translated text."
)
DONE_SENTINEL = "[DONE]"
DEFAULT_RETRY_BUDGET = 5

# Some upstream errors are advisory and say so in plain text.
RETRYABLE_PATTERN = re.compile(r"You can retry")

ApiCaller = Callable[..., Awaitable[CallStatus]]


class ServerErrorKind(Enum):
    TRANSIENT = auto()
    FATAL = auto()


@dataclass(frozen=True)
class ServerErrorClassification:
    """Outcome of inspecting an error response body."""

    kind: ServerErrorKind
    message: str
    malformed: bool = False


class ServerErrorResponse(Exception):
    """Raised by a transport when the endpoint answers with an error status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Error code: {status_code}")
        self.status_code = status_code
        self.body = body


def classify_server_error(body: str) -> ServerErrorClassification:
    """Decide whether an error response is worth retrying.

    The message is read from ``error.message`` of a JSON body. A body that
    does not parse, or carries no message, is malformed and is classified
    on its raw text instead.
    """

    message: Optional[str] = None
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            message = error["message"]

    malformed = message is None
    if malformed:
        logger.warning("Malformed error response from provider: %r", body[:500])
        message = body.strip() or "empty error response"

    kind = ServerErrorKind.TRANSIENT if RETRYABLE_PATTERN.search(message) else ServerErrorKind.FATAL
    return ServerErrorClassification(kind=kind, message=message, malformed=malformed)


@dataclass(frozen=True)
class StreamEvent:
    """One parsed server-sent event of a completion stream."""

    content: str = ""
    finish_reason: Optional[str] = None
    terminator: bool = False


class StreamLineBuffer:
    """Reassembles complete lines from arbitrarily split byte chunks."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return lines

    def flush(self) -> List[str]:
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [remainder] if remainder else []


def parse_stream_line(line: str) -> Optional[StreamEvent]:
    """Parse one complete stream line, or return ``None`` to skip it."""

    line = line.strip()
    if not line or line.startswith(":"):
        return None
    data = line[len("data:"):].strip() if line.startswith("data:") else line
    if data == DONE_SENTINEL:
        return StreamEvent(terminator=True)

    try:
        record = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed stream record: %r", data)
        return None

    choices = record.get("choices") if isinstance(record, dict) else None
    if not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    delta = choice.get("delta") or {}
    return StreamEvent(
        content=delta.get("content") or "",
        finish_reason=choice.get("finish_reason"),
    )


def build_messages(instruction: str, text: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": instruction},
        {"role": "assistant", "content": ASSISTANT_ACKNOWLEDGEMENT},
        {"role": "user", "content": text},
    ]


class StreamingTranslationClient(ABC):
    """Translates one fragment per call over a token stream.

    Subclasses only provide the transport; the status protocol, the retry of
    advisory server errors and the stream parsing live here. ``call`` never
    raises: every outcome is reported as a terminal ``CallStatus``.
    """

    def __init__(self, *, retry_interval: float = 0.0, debug: bool = False) -> None:
        self.retry_interval = retry_interval
        self.debug = debug

    async def aclose(self) -> None:
        """Release transport resources; the client is unusable afterwards."""

    @abstractmethod
    def _open_stream(
        self,
        text: str,
        instruction: str,
        options: ApiOptions,
    ) -> AsyncContextManager[AsyncIterator[bytes]]:
        """Start a request and yield its body as raw byte chunks.

        Raises ``ServerErrorResponse`` when the endpoint rejects the request.
        """

    async def call(
        self,
        text: str,
        instruction: str,
        options: ApiOptions,
        on_status: StatusCallback,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
    ) -> CallStatus:
        on_status(CallStatus.pending())

        try:
            async with self._open_stream(text, instruction, options) as chunks:
                return await self._read_stream(chunks, on_status)
        except ServerErrorResponse as exc:
            error_body = exc.body
            self._log_debug("provider.response.error", f"{exc} {error_body}")
        except Exception as exc:
            logger.warning("Stream read error: %s", exc, exc_info=self.debug)
            return self._finish(on_status, CallStatus.error(STREAM_READ_ERROR_MESSAGE))

        classification = classify_server_error(error_body)
        if classification.kind is ServerErrorKind.TRANSIENT and retry_budget > 0:
            logger.info(
                "Provider asked for a retry (%d left): %s",
                retry_budget,
                classification.message,
            )
            on_status(CallStatus.retrying(f"(Retrying {retry_budget})"))
            await asyncio.sleep(self.retry_interval)
            return await self.call(text, instruction, options, on_status, retry_budget - 1)

        return self._finish(on_status, CallStatus.error(classification.message))

    async def _read_stream(
        self,
        chunks: AsyncIterator[bytes],
        on_status: StatusCallback,
    ) -> CallStatus:
        buffer = StreamLineBuffer()
        parts: List[str] = []

        async for chunk in chunks:
            outcome = self._consume_lines(buffer.feed(chunk), parts, on_status)
            if outcome is not None:
                return self._finish(on_status, outcome)

        outcome = self._consume_lines(buffer.flush(), parts, on_status)
        if outcome is not None:
            return self._finish(on_status, outcome)
        return self._finish(on_status, CallStatus.done("".join(parts)))

    def _consume_lines(
        self,
        lines: List[str],
        parts: List[str],
        on_status: StatusCallback,
    ) -> Optional[CallStatus]:
        """Apply complete lines; return a terminal status once the stream ends."""

        for line in lines:
            self._log_debug("provider.response.line", line)
            event = parse_stream_line(line)
            if event is None:
                continue
            if event.terminator:
                return CallStatus.done("".join(parts))
            if event.finish_reason == "length":
                return CallStatus.error(LENGTH_EXCEEDED_MESSAGE)
            if event.content:
                on_status(CallStatus.pending(event.content))
                parts.append(event.content)
        return None

    @staticmethod
    def _finish(on_status: StatusCallback, status: CallStatus) -> CallStatus:
        on_status(status)
        return status

    def _log_debug(self, label: str, payload: Any) -> None:
        """Emit structured debug information when enabled."""

        if not self.debug:
            return
        try:
            if isinstance(payload, (dict, list)):
                message = json.dumps(payload, ensure_ascii=False, indent=2)
            else:
                message = str(payload)
        except (TypeError, ValueError):
            message = repr(payload)
        logger.debug("%s:\n%s", label, message)


class EchoStreamingClient(StreamingTranslationClient):
    """A client that streams the input back unchanged (dry runs and tests)."""

    TOKEN_PATTERN = re.compile(r"\S+|\s+")

    def __init__(self, *, retry_interval: float = 0.0, debug: bool = False) -> None:
        super().__init__(retry_interval=retry_interval, debug=debug)
        self.requests: List[str] = []

    @asynccontextmanager
    async def _open_stream(
        self,
        text: str,
        instruction: str,
        options: ApiOptions,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        self.requests.append(text)
        yield self._echo_chunks(text)

    async def _echo_chunks(self, text: str) -> AsyncIterator[bytes]:
        for token in self.TOKEN_PATTERN.findall(text):
            record = {"choices": [{"delta": {"content": token}, "finish_reason": None}]}
            yield f"data: {json.dumps(record, ensure_ascii=False)}\n\n".encode("utf-8")
        yield f"data: {DONE_SENTINEL}\n\n".encode("utf-8")


class OpenAIStreamingClient(StreamingTranslationClient):
    """Streaming client for OpenAI and Azure OpenAI chat completions."""

    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        settings: FerryConfig,
        *,
        retry_interval: float = 0.0,
        debug: bool = False,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(retry_interval=retry_interval, debug=debug)
        self.settings = settings
        self.provider_kind = settings.LLM_PROVIDER
        validate_provider_settings(settings)
        if http_client is None and settings.HTTPS_PROXY:
            http_client = httpx.AsyncClient(proxy=settings.HTTPS_PROXY)
        self._client, self._default_model = self._build_client(http_client)

    def _build_client(self, http_client: httpx.AsyncClient | None) -> tuple[Any, str]:
        if self.provider_kind == "azure_openai":
            return self._build_azure_client(http_client)
        return self._build_openai_client(http_client)

    def _build_openai_client(self, http_client: httpx.AsyncClient | None) -> tuple[Any, str]:
        client = AsyncOpenAI(
            api_key=self.settings.OPENAI_API_KEY,
            base_url=self.settings.OPENAI_BASE_URL,
            http_client=http_client,
            max_retries=0,
        )
        return client, self.settings.FERRY_MODEL or self.DEFAULT_MODEL

    def _build_azure_client(self, http_client: httpx.AsyncClient | None) -> tuple[Any, str]:
        client = AsyncAzureOpenAI(
            api_key=self.settings.AZURE_OPENAI_API_KEY,
            api_version=self.settings.AZURE_OPENAI_API_VERSION,
            azure_endpoint=self.settings.AZURE_OPENAI_ENDPOINT,  # type: ignore[arg-type]
            http_client=http_client,
            max_retries=0,
        )
        return client, self.settings.AZURE_OPENAI_DEPLOYMENT_NAME  # type: ignore[return-value]

    async def aclose(self) -> None:
        # Also closes the injected or proxy httpx client.
        await self._client.close()

    @asynccontextmanager
    async def _open_stream(
        self,
        text: str,
        instruction: str,
        options: ApiOptions,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        model = options.model or self._default_model
        messages = build_messages(instruction, text)
        self._log_debug(
            "provider.request.payload",
            {"model": model, "temperature": options.temperature, "messages": messages},
        )
        request = self._client.chat.completions.with_streaming_response.create(
            model=model,
            temperature=options.temperature,
            messages=messages,
            stream=True,
        )
        try:
            async with request as response:
                yield response.iter_bytes()
        except APIStatusError as exc:
            raise ServerErrorResponse(exc.status_code, _error_body(exc)) from exc


def _error_body(exc: APIStatusError) -> str:
    """Return the raw error body, falling back to the SDK's parsed copy."""

    try:
        return exc.response.text
    except httpx.ResponseNotRead:
        if isinstance(exc.body, dict):
            return json.dumps({"error": exc.body}, ensure_ascii=False)
        return str(exc.body or exc.message)


def build_client(
    name: str | None,
    settings: FerryConfig,
    *,
    debug: bool = False,
    http_client: httpx.AsyncClient | None = None,
) -> StreamingTranslationClient:
    """Factory to create streaming clients by provider name."""

    retry_interval = settings.FERRY_API_CALL_INTERVAL
    normalized = (name or "openai").strip().lower().replace("-", "_")
    if normalized in {"openai", "gpt", "default"}:
        return OpenAIStreamingClient(
            settings,
            retry_interval=retry_interval,
            debug=debug,
            http_client=http_client,
        )
    if normalized in {"azure", "azure_openai"}:
        return OpenAIStreamingClient(
            settings.model_copy(update={"LLM_PROVIDER": "azure_openai"}),
            retry_interval=retry_interval,
            debug=debug,
            http_client=http_client,
        )
    if normalized in {"echo", "noop", "mock"}:
        return EchoStreamingClient(retry_interval=retry_interval, debug=debug)
    raise TranslationProviderConfigurationError(
        f"Unknown translation provider '{name}'."
    )


def configure_api_caller(client: StreamingTranslationClient, interval: float) -> ApiCaller:
    """Return the client's ``call`` gated by a shared call-rate limiter."""

    return limit_call_rate(client.call, interval)

import json

import httpx
import pytest

from ferry.configuration import FerryConfig
from ferry.errors import TranslationProviderConfigurationError
from ferry.providers import (
    ASSISTANT_ACKNOWLEDGEMENT,
    SYSTEM_PROMPT,
    EchoStreamingClient,
    OpenAIStreamingClient,
    ServerErrorKind,
    StreamLineBuffer,
    build_client,
    classify_server_error,
    configure_api_caller,
    parse_stream_line,
)
from ferry.structures import ApiOptions, CallState, CallStatus

from streaming_helpers import DONE_LINE, sse_line, streaming_response


OPTIONS = ApiOptions(model="gpt-4o-mini", temperature=0.1)
RETRY_BODY = {"error": {"message": "Rate limited. You can retry later"}}


class TestClassifyServerError:
    def test_retry_advice_is_transient(self):
        result = classify_server_error(json.dumps({"error": {"message": "You can retry later"}}))
        assert result.kind is ServerErrorKind.TRANSIENT
        assert result.message == "You can retry later"
        assert not result.malformed

    def test_other_messages_are_fatal(self):
        result = classify_server_error(json.dumps({"error": {"message": "Invalid API key"}}))
        assert result.kind is ServerErrorKind.FATAL
        assert result.message == "Invalid API key"

    def test_unparseable_body_is_malformed_and_fatal(self):
        result = classify_server_error("<html>Bad Gateway</html>")
        assert result.malformed
        assert result.kind is ServerErrorKind.FATAL
        assert result.message == "<html>Bad Gateway</html>"

    def test_malformed_body_with_retry_advice_is_transient(self):
        result = classify_server_error("overloaded. You can retry in a moment")
        assert result.malformed
        assert result.kind is ServerErrorKind.TRANSIENT

    def test_json_without_message_is_malformed(self):
        result = classify_server_error(json.dumps({"detail": "nope"}))
        assert result.malformed
        assert result.kind is ServerErrorKind.FATAL


class TestStreamLineBuffer:
    def test_partial_lines_are_carried_over(self):
        buffer = StreamLineBuffer()
        assert buffer.feed(b"data: one\nda") == ["data: one"]
        assert buffer.feed(b"ta: two") == []
        assert buffer.feed(b"\n\n") == ["data: two", ""]
        assert buffer.flush() == []

    def test_multibyte_characters_split_across_chunks(self):
        encoded = "data: héllo\n".encode("utf-8")
        split_at = encoded.index(b"\xc3") + 1
        buffer = StreamLineBuffer()
        assert buffer.feed(encoded[:split_at]) == []
        assert buffer.feed(encoded[split_at:]) == ["data: héllo"]

    def test_flush_returns_unterminated_line(self):
        buffer = StreamLineBuffer()
        buffer.feed(b"data: [DONE]")
        assert buffer.flush() == ["data: [DONE]"]


class TestParseStreamLine:
    def test_blank_and_comment_lines_are_skipped(self):
        assert parse_stream_line("") is None
        assert parse_stream_line("   ") is None
        assert parse_stream_line(": keep-alive") is None

    def test_done_sentinel(self):
        assert parse_stream_line("data: [DONE]").terminator

    def test_content_mentioning_sentinel_is_ordinary_text(self):
        event = parse_stream_line(sse_line("[DONE]").decode().strip())
        assert not event.terminator
        assert event.content == "[DONE]"

    def test_content_delta(self):
        event = parse_stream_line(sse_line("Hi").decode().strip())
        assert event.content == "Hi"
        assert event.finish_reason is None

    def test_missing_content_is_empty(self):
        event = parse_stream_line(sse_line(None, finish_reason="stop").decode().strip())
        assert event.content == ""
        assert event.finish_reason == "stop"

    def test_malformed_record_is_logged_and_skipped(self, caplog):
        assert parse_stream_line('data: {"choices": [') is None
        assert "malformed stream record" in caplog.text

    def test_record_without_choices_is_skipped(self):
        assert parse_stream_line('data: {"usage": {"total_tokens": 3}, "choices": []}') is None


class TestOpenAIStreamingClient:
    async def test_streams_tokens_and_returns_translation(self, make_openai_client, status_log):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return streaming_response(
                [
                    b'data: {"choices":[{"delta":{"content":"Hel',
                    b'lo"},"finish_reason":null}]}\n\ndata: {"choices":[{"delta":{"content":" w\xc3',
                    b'\xa9"},"finish_reason":null}]}\n\n',
                    sse_line(None, finish_reason="stop"),
                    DONE_LINE,
                ]
            )

        client = make_openai_client(handler)
        result = await client.call("Hallo wé", "Translate to en", OPTIONS, status_log.append)

        assert result == CallStatus.done("Hello wé")
        assert status_log[0] == CallStatus.pending("")
        assert status_log[1:-1] == [CallStatus.pending("Hello"), CallStatus.pending(" wé")]
        assert status_log[-1] == result
        assert len(requests) == 1

    async def test_request_carries_fixed_roles_and_stream_flag(self, make_openai_client, status_log):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["authorization"] = request.headers.get("authorization")
            captured["body"] = json.loads(request.content)
            return streaming_response([sse_line("ok"), DONE_LINE])

        client = make_openai_client(handler)
        await client.call("Bonjour", "Translate into en", OPTIONS, status_log.append)

        body = captured["body"]
        assert captured["url"] == "https://api.test/v1/chat/completions"
        assert captured["authorization"] == "Bearer sk-test"
        assert body["model"] == "gpt-4o-mini"
        assert body["temperature"] == 0.1
        assert body["stream"] is True
        assert body["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "Translate into en"},
            {"role": "assistant", "content": ASSISTANT_ACKNOWLEDGEMENT},
            {"role": "user", "content": "Bonjour"},
        ]

    async def test_length_finish_reason_reports_error(self, make_openai_client, status_log):
        def handler(request):
            return streaming_response(
                [sse_line("partial"), sse_line(None, finish_reason="length"), sse_line("late"), DONE_LINE]
            )

        client = make_openai_client(handler)
        result = await client.call("long text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.error("reduce the length.")
        assert status_log[-1] == result
        assert CallStatus.pending("late") not in status_log

    async def test_malformed_stream_line_does_not_abort_call(self, make_openai_client, status_log):
        def handler(request):
            return streaming_response(
                [sse_line("one"), b"data: {broken json\n\n", sse_line(" two"), DONE_LINE]
            )

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.done("one two")

    async def test_stream_ending_without_sentinel_completes(self, make_openai_client, status_log):
        def handler(request):
            return streaming_response([sse_line("a"), sse_line("b")])

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.done("ab")

    async def test_sentinel_text_inside_content_does_not_end_stream(
        self, make_openai_client, status_log
    ):
        def handler(request):
            return streaming_response(
                [sse_line("- [x] step one "), sse_line("[DONE]"), sse_line(" and more"), DONE_LINE]
            )

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.done("- [x] step one [DONE] and more")

    async def test_sentinel_mid_chunk_stops_later_records(self, make_openai_client, status_log):
        def handler(request):
            return streaming_response(
                [sse_line("a") + sse_line("b") + DONE_LINE + sse_line("late")]
            )

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.done("ab")
        assert CallStatus.pending("late") not in status_log

    async def test_aclose_closes_http_client(self):
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        client = OpenAIStreamingClient(
            FerryConfig(OPENAI_API_KEY="sk-test"),
            http_client=http_client,
        )

        await client.aclose()

        assert http_client.is_closed

    async def test_retries_advisory_errors_then_succeeds(self, make_openai_client, status_log):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) <= 2:
                return httpx.Response(429, json={"error": {"message": "You can retry later"}})
            return streaming_response([sse_line("translated"), DONE_LINE])

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append, retry_budget=5)

        assert result == CallStatus.done("translated")
        assert status_log[-1].state is CallState.DONE
        retries = [status for status in status_log if status.state is CallState.RETRYING]
        assert [status.note for status in retries] == ["(Retrying 5)", "(Retrying 4)"]
        assert len(attempts) == 3

    async def test_exhausted_retry_budget_becomes_error(self, make_openai_client, status_log):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(503, json=RETRY_BODY)

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append, retry_budget=2)

        assert result == CallStatus.error("Rate limited. You can retry later")
        assert status_log[-1] == result
        assert len(attempts) == 3

    async def test_fatal_server_error_is_not_retried(self, make_openai_client, status_log):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(400, json={"error": {"message": "Invalid model"}})

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.error("Invalid model")
        assert len(attempts) == 1

    async def test_malformed_error_body_is_fatal(self, make_openai_client, status_log):
        def handler(request):
            return httpx.Response(502, text="Bad Gateway")

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.error("Bad Gateway")

    async def test_transport_failure_becomes_stream_read_error(self, make_openai_client, status_log):
        def handler(request):
            raise httpx.ConnectError("connection reset", request=request)

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.error("stream read error")
        assert status_log[-1] == result

    async def test_failure_while_reading_becomes_stream_read_error(
        self, make_openai_client, status_log
    ):
        async def broken_stream():
            yield sse_line("start")
            raise httpx.ReadError("peer went away")

        def handler(request):
            return httpx.Response(200, content=broken_stream())

        client = make_openai_client(handler)
        result = await client.call("text", "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.error("stream read error")


class TestEchoStreamingClient:
    async def test_echoes_text_through_stream_protocol(self, status_log):
        client = EchoStreamingClient()
        text = "Hello  world,\n\nsecond   paragraph\n"

        result = await client.call(text, "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.done(text)
        assert client.requests == [text]
        assert any(status.last_token == "Hello" for status in status_log)

    async def test_text_containing_sentinel_round_trips(self, status_log):
        client = EchoStreamingClient()
        text = "Task [DONE] and more text"

        result = await client.call(text, "Translate", OPTIONS, status_log.append)

        assert result == CallStatus.done(text)

    async def test_aclose_is_harmless(self):
        await EchoStreamingClient().aclose()


class TestBuildClient:
    def test_echo_needs_no_credentials(self):
        client = build_client("echo", FerryConfig())
        assert isinstance(client, EchoStreamingClient)

    def test_openai_requires_api_key(self):
        with pytest.raises(TranslationProviderConfigurationError):
            build_client("openai", FerryConfig())

    def test_openai_client_uses_interval_for_retries(self):
        settings = FerryConfig(OPENAI_API_KEY="sk-test", FERRY_API_CALL_INTERVAL=3)
        client = build_client(None, settings)
        assert isinstance(client, OpenAIStreamingClient)
        assert client.retry_interval == 3

    def test_azure_requires_full_configuration(self):
        with pytest.raises(TranslationProviderConfigurationError) as excinfo:
            build_client("azure", FerryConfig(AZURE_OPENAI_API_KEY="key"))
        assert "AZURE_OPENAI_ENDPOINT" in str(excinfo.value)

    def test_unknown_provider(self):
        with pytest.raises(TranslationProviderConfigurationError):
            build_client("telepathy", FerryConfig())


async def test_configured_caller_forwards_to_client(status_log):
    client = EchoStreamingClient()
    call_api = configure_api_caller(client, 0.01)

    first = await call_api("a", "i", OPTIONS, status_log.append)
    second = await call_api("b", "i", OPTIONS, status_log.append)

    assert first == CallStatus.done("a")
    assert second == CallStatus.done("b")
    assert client.requests == ["a", "b"]

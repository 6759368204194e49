"""Language-model gateway: protocol, stream reduction and Anthropic adapter.

A gateway call returns either a terminal ``GatewayResult`` or an async
iterator of ``StreamEvent``. ``resolve_response`` turns both into a
``GatewayResult`` so the controller never deals with stream plumbing.
Failures surface as ``TransientGatewayError`` or ``FatalGatewayError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol, TypeVar

import httpx

from adjutant.api.models import GatewayResult, Message, Role, StreamEvent, ToolCall
from adjutant.config import Settings
from adjutant.errors import FatalGatewayError, GatewayError, OperationAborted, TransientGatewayError

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
HISTORY_OMITTED = "[Earlier conversation omitted]"
_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
_TRANSIENT_PATTERNS = re.compile(
    r"timeout|timed out|rate.?limit|network|overloaded|connection|econnreset|\b50[234]\b|\b529\b",
    re.IGNORECASE,
)

T = TypeVar("T")

GatewayResponse = GatewayResult | AsyncIterator[StreamEvent]


class Gateway(Protocol):
    """Anything that can answer a message list with text and tool calls."""

    async def call(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        abort: asyncio.Event | None = None,
    ) -> GatewayResponse: ...


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_status(status_code: int, message: str = "") -> GatewayError:
    """Map an HTTP status to the error taxonomy."""
    text = message or f"HTTP {status_code}"
    if status_code in (408, 429) or status_code >= 500:
        return TransientGatewayError(text, status_code=status_code)
    return FatalGatewayError(text, status_code=status_code)


def classify_message(message: str, status_code: int | None = None) -> GatewayError:
    """Classify an error reported inside a stream."""
    if status_code is not None:
        return classify_status(status_code, message)
    if _TRANSIENT_PATTERNS.search(message):
        return TransientGatewayError(message)
    return FatalGatewayError(message)


# ---------------------------------------------------------------------------
# Stream reduction
# ---------------------------------------------------------------------------


def _finalize_call(tool_id: str, name: str, raw: str) -> ToolCall:
    call = ToolCall(id=tool_id, name=name)
    if not raw.strip():
        return call
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unparsable arguments for %s (%s): %.200s", name, tool_id, raw)
        call.parse_error = raw
        return call
    if isinstance(parsed, dict):
        call.arguments = parsed
    else:
        call.parse_error = raw
    return call


async def collect_stream(
    events: AsyncIterator[StreamEvent],
    on_text: Callable[[str], Awaitable[None]] | None = None,
) -> GatewayResult:
    """Reduce an event stream to a terminal result.

    Argument fragments are buffered per tool id and parsed once the call
    ends. Calls with invalid names are dropped. An ``error`` event raises
    the classified gateway error; a stream that stops without ``done`` is
    transient.
    """
    text_parts: list[str] = []
    names: dict[str, str] = {}
    buffers: dict[str, list[str]] = {}
    finished: dict[str, ToolCall] = {}
    order: list[str] = []
    ignored: set[str] = set()
    stop_reason = None

    try:
        async for event in events:
            if event.type == "text_delta":
                text_parts.append(event.text)
                if on_text is not None and event.text:
                    await on_text(event.text)
            elif event.type == "tool_call_start":
                if not _TOOL_NAME_RE.match(event.tool_name or ""):
                    logger.warning("Ignoring tool call with invalid name %r", event.tool_name)
                    ignored.add(event.tool_id)
                    continue
                if event.tool_id not in names:
                    order.append(event.tool_id)
                names[event.tool_id] = event.tool_name
                buffers[event.tool_id] = []
            elif event.type == "tool_call_delta":
                if event.tool_id in buffers and event.tool_id not in finished:
                    buffers[event.tool_id].append(event.text)
            elif event.type == "tool_call_end":
                if event.tool_id in buffers and event.tool_id not in finished:
                    finished[event.tool_id] = _finalize_call(
                        event.tool_id, names[event.tool_id], "".join(buffers[event.tool_id])
                    )
            elif event.type == "done":
                stop_reason = event.stop_reason or "end_turn"
                break
            elif event.type == "error":
                raise classify_message(event.text or "stream error", event.status_code)
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    if stop_reason is None:
        raise TransientGatewayError("Stream ended before completion")

    calls = []
    for tool_id in order:
        if tool_id in ignored:
            continue
        call = finished.get(tool_id) or _finalize_call(tool_id, names[tool_id], "".join(buffers[tool_id]))
        calls.append(call)
    return GatewayResult(text="".join(text_parts), tool_calls=calls, stop_reason=stop_reason)


async def resolve_response(
    response: GatewayResponse,
    on_text: Callable[[str], Awaitable[None]] | None = None,
) -> GatewayResult:
    """Normalize either response form to a GatewayResult."""
    if isinstance(response, GatewayResult):
        if on_text is not None and response.text:
            await on_text(response.text)
        valid = [c for c in response.tool_calls if _TOOL_NAME_RE.match(c.name)]
        if len(valid) != len(response.tool_calls):
            logger.warning("Dropped %d tool calls with invalid names", len(response.tool_calls) - len(valid))
            response.tool_calls = valid
        return response
    return await collect_stream(response, on_text)


async def with_abort(awaitable: Awaitable[T], abort: asyncio.Event | None) -> T:
    """Await *awaitable*, cancelling it and raising OperationAborted on abort."""
    if abort is None:
        return await awaitable
    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationAborted()

    task = asyncio.ensure_future(awaitable)
    abort_task = asyncio.create_task(abort.wait())
    try:
        done, _ = await asyncio.wait({task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        abort_task.cancel()

    if task in done:
        return task.result()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise OperationAborted()


# ---------------------------------------------------------------------------
# Anthropic adapter
# ---------------------------------------------------------------------------


def _assistant_blocks(msg: Message) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    if msg.content:
        blocks.append({"type": "text", "text": msg.content})
    for tc in msg.tool_calls:
        blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
    return blocks


def to_api_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert history to Messages-API form.

    System-role entries (compaction summaries) become user text. Tool
    results become ``tool_result`` blocks in user turns; consecutive
    same-role entries are merged so roles alternate. The API requires the
    first turn to be a user turn, so an assistant-led history gets a
    placeholder user turn in front.
    """
    out: list[dict[str, Any]] = []

    def push(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": list(blocks)})

    for msg in messages:
        if msg.internal:
            continue
        if msg.role == Role.SYSTEM:
            if msg.content:
                push("user", [{"type": "text", "text": msg.content}])
        elif msg.role == Role.USER:
            push("user", [{"type": "text", "text": msg.content or "(empty)"}])
        elif msg.role == Role.ASSISTANT:
            push("assistant", _assistant_blocks(msg))
        elif msg.role == Role.TOOL:
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
            }
            if msg.is_error:
                block["is_error"] = True
            push("user", [block])

    if out and out[0]["role"] != "user":
        out.insert(0, {"role": "user", "content": [{"type": "text", "text": HISTORY_OMITTED}]})
    return out


def _parse_sse_event(data: dict[str, Any], index_to_id: dict[int, str]) -> StreamEvent | None:
    """Translate one Anthropic SSE payload into a StreamEvent."""
    event_type = data.get("type")

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(type="error", text=f"{error.get('type', 'unknown')}: {error.get('message', '')}")

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        if block.get("type") == "tool_use":
            index_to_id[data.get("index", 0)] = block.get("id", "")
            return StreamEvent(type="tool_call_start", tool_id=block.get("id", ""), tool_name=block.get("name", ""))
        return None

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""))
        if delta.get("type") == "input_json_delta":
            tool_id = index_to_id.get(data.get("index", 0), "")
            return StreamEvent(type="tool_call_delta", tool_id=tool_id, text=delta.get("partial_json", ""))
        return None

    if event_type == "content_block_stop":
        tool_id = index_to_id.get(data.get("index", 0))
        if tool_id:
            return StreamEvent(type="tool_call_end", tool_id=tool_id)
        return None

    return None


class AnthropicGateway:
    """Anthropic Messages API over httpx.

    Streams when ``settings.stream_responses`` is set, otherwise returns a
    terminal result. Retries belong to the controller, not here.
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_client = http is None

    async def start(self) -> None:
        """Create the httpx client with auth headers and timeouts."""
        if self._http is not None:
            return
        settings = self._settings
        headers = {"anthropic-version": _API_VERSION, "content-type": "application/json"}
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- model calls will fail")

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("Gateway client initialized (model: %s)", settings.model)

    async def close(self) -> None:
        if self._http is not None and self._owns_client:
            await self._http.aclose()
        self._http = None

    def build_payload(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [{"type": "text", "text": system_prompt, "cache_control": {"type": "ephemeral"}}],
            "messages": to_api_messages(messages),
        }
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def call(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        abort: asyncio.Event | None = None,
    ) -> GatewayResponse:
        if self._http is None:
            raise RuntimeError("Gateway not started -- call start() first")
        if self._settings.stream_responses:
            payload = self.build_payload(messages, tools, system_prompt, stream=True)
            return self._stream(payload, abort)
        payload = self.build_payload(messages, tools, system_prompt, stream=False)
        return await self._complete(payload)

    async def _complete(self, payload: dict[str, Any]) -> GatewayResult:
        try:
            response = await self._http.post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise TransientGatewayError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientGatewayError(f"Network error: {e}") from e

        if response.status_code != 200:
            raise classify_status(response.status_code, _error_text(response.status_code, response.text))

        try:
            data = response.json()
            text_parts = []
            calls = []
            for block in data.get("content", []):
                if block.get("type") == "text":
                    text_parts.append(block.get("text", ""))
                elif block.get("type") == "tool_use":
                    calls.append(ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {}))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise FatalGatewayError(f"Malformed response from Anthropic API: {e}") from e
        return GatewayResult(
            text="".join(text_parts),
            tool_calls=calls,
            stop_reason=data.get("stop_reason", ""),
            usage=data.get("usage"),
        )

    async def _stream(self, payload: dict[str, Any], abort: asyncio.Event | None) -> AsyncIterator[StreamEvent]:
        index_to_id: dict[int, str] = {}
        stop_reason = ""
        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    yield StreamEvent(
                        type="error",
                        text=_error_text(response.status_code, body),
                        status_code=response.status_code,
                    )
                    return

                async for line in response.aiter_lines():
                    if abort is not None and abort.is_set():
                        raise OperationAborted()
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except ValueError as e:
                        raise FatalGatewayError(f"Malformed stream event from Anthropic API: {e}") from e
                    if not isinstance(data, dict):
                        raise FatalGatewayError(f"Malformed stream event from Anthropic API: {line[6:80]}")
                    if data.get("type") == "message_delta":
                        stop_reason = data.get("delta", {}).get("stop_reason") or stop_reason
                        continue
                    if data.get("type") == "message_stop":
                        yield StreamEvent(type="done", stop_reason=stop_reason or "end_turn")
                        return
                    event = _parse_sse_event(data, index_to_id)
                    if event is not None:
                        yield event
                        if event.type == "error":
                            return
        except httpx.TimeoutException as e:
            raise TransientGatewayError(f"Stream timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientGatewayError(f"Network error: {e}") from e


def _error_text(status_code: int, body: str) -> str:
    try:
        error = json.loads(body).get("error", {})
        return f"Anthropic API error ({status_code}): {error.get('type', 'unknown')} - {error.get('message', '')}"
    except (json.JSONDecodeError, AttributeError):
        return f"Anthropic API error ({status_code}): {body[:500]}"

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import math
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx

from ..config import ProviderConfig
from ..errors import AuthenticationError, ProviderError, RateLimitError, RequestCancelledError
from ..types import CancelToken, ErrorEvent, error_event

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

EventParser = Callable[[AsyncIterator[str]], AsyncIterator[Any]]

_T = TypeVar("_T")


class StreamCancelled(Exception):
    """Internal signal: the caller's cancel token fired mid-read."""


class LineBuffer:
    """Turn arbitrary byte chunks into complete text lines.

    Decoding is incremental, so a multi-byte character split across two
    chunks is reassembled before the line is emitted.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        self._pending += self._decoder.decode(b"", final=True)
        tail, self._pending = self._pending, ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    buffer = LineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


def sse_data(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[5:].lstrip()


def load_json_object(text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.debug(f"skipping malformed stream payload payload={text[:200]!r}")
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        return None
    if seconds < 0:
        return None
    return float(math.ceil(seconds))


async def iter_response_bytes(
    response: httpx.Response, cancel: CancelToken | None
) -> AsyncIterator[bytes]:
    chunks = response.aiter_bytes()
    if cancel is None:
        async for chunk in chunks:
            yield chunk
        return

    async def _next_chunk() -> bytes | None:
        try:
            return await chunks.__anext__()
        except StopAsyncIteration:
            return None

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        while True:
            if cancel.cancelled:
                raise StreamCancelled()
            reader = asyncio.ensure_future(_next_chunk())
            done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if reader not in done:
                reader.cancel()
                try:
                    await reader
                except (asyncio.CancelledError, httpx.HTTPError):
                    pass
                raise StreamCancelled()
            chunk = reader.result()
            if chunk is None:
                return
            yield chunk
    finally:
        waiter.cancel()


def _error_message(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        message = payload.get("message")
        if isinstance(message, str):
            return message
    return text


async def raise_for_status(
    response: httpx.Response,
    *,
    provider: str,
    model: str | None = None,
    status_messages: Mapping[int, str] | None = None,
) -> None:
    if response.is_success:
        return
    body = await response.aread()
    status = response.status_code
    if status == 401:
        raise AuthenticationError(provider, model)
    if status == 429:
        raise RateLimitError(
            provider, model, retry_after=parse_retry_after(response.headers.get("retry-after"))
        )
    detail = (status_messages or {}).get(status)
    if detail is None:
        detail = _error_message(body) or response.reason_phrase
    raise ProviderError(f"{provider} API error ({status}): {detail}", provider, model, status)


def make_client(
    config: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float | None = None,
) -> httpx.AsyncClient:
    if transport is None and config.max_retries:
        transport = httpx.AsyncHTTPTransport(retries=config.max_retries)
    return httpx.AsyncClient(
        timeout=timeout if timeout is not None else config.timeout,
        transport=transport,
    )


async def stream_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: Mapping[str, str],
    json_body: dict[str, Any],
    parser: EventParser,
    provider: str,
    model: str,
    cancel: CancelToken | None = None,
    status_messages: Mapping[int, str] | None = None,
) -> AsyncIterator[Any]:
    """Issue one streaming request and yield parsed events.

    Exactly one terminal event is produced. Transport failures, non-2xx
    statuses and cancellation are all reported as an ``ErrorEvent``.
    """
    try:
        async with client.stream(method, url, headers=headers, json=json_body) as response:
            await raise_for_status(
                response, provider=provider, model=model, status_messages=status_messages
            )
            lines = iter_lines(iter_response_bytes(response, cancel))
            async for event in parser(lines):
                yield event
                if event.terminal:
                    return
    except StreamCancelled:
        yield ErrorEvent(message="Request cancelled", cancelled=True)
    except ProviderError as exc:
        yield error_event(exc)
    except httpx.HTTPError as exc:
        yield ErrorEvent(message=f"Transport error: {exc}")
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        logger.warning(f"malformed stream payload provider={provider} model={model} error={exc!r}")
        yield ErrorEvent(message=f"Malformed {provider} stream payload: {exc}")


async def run_cancellable(
    awaitable: Awaitable[_T],
    cancel: CancelToken | None,
    *,
    provider: str,
    model: str | None = None,
) -> _T:
    """Await ``awaitable`` unless ``cancel`` fires first.

    Raises :class:`RequestCancelledError` when the token wins the race; the
    pending request is cancelled before the error is raised.
    """
    if cancel is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    if cancel.cancelled:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelledError(provider, model)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task not in done:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelledError(provider, model)
    return task.result()


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str],
    json_body: dict[str, Any],
    provider: str,
    model: str,
    status_messages: Mapping[int, str] | None = None,
    cancel: CancelToken | None = None,
) -> dict[str, Any]:
    return await run_cancellable(
        _post_json(
            client,
            url,
            headers=headers,
            json_body=json_body,
            provider=provider,
            model=model,
            status_messages=status_messages,
        ),
        cancel,
        provider=provider,
        model=model,
    )


async def _post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str],
    json_body: dict[str, Any],
    provider: str,
    model: str,
    status_messages: Mapping[int, str] | None,
) -> dict[str, Any]:
    try:
        response = await client.post(url, headers=headers, json=json_body)
    except httpx.HTTPError as exc:
        raise ProviderError(f"Transport error: {exc}", provider, model) from exc
    await raise_for_status(
        response, provider=provider, model=model, status_messages=status_messages
    )
    try:
        data = response.json()
    except json.JSONDecodeError as exc:
        raise ProviderError(
            f"{provider} returned invalid JSON", provider, model, response.status_code
        ) from exc
    if not isinstance(data, dict):
        raise ProviderError(
            f"{provider} returned an unexpected payload", provider, model, response.status_code
        )
    return data


async def probe(
    client: httpx.AsyncClient, url: str, headers: Mapping[str, str] | None = None
) -> bool:
    try:
        response = await client.get(url, headers=headers)
    except httpx.HTTPError:
        return False
    return response.is_success


RESERVED_OPTION_KEYS: frozenset[str] = frozenset(
    {"model", "messages", "stream", "temperature", "max_tokens", "tools", "tool_choice"}
)


def merge_extra_options(payload: dict[str, Any], extra_options: Mapping[str, Any] | None) -> None:
    if not extra_options:
        return
    for key, value in extra_options.items():
        if key in RESERVED_OPTION_KEYS or value is None:
            continue
        payload[key] = value

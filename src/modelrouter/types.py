import asyncio
from dataclasses import dataclass, field
from typing import Annotated, Any, AsyncIterable, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

from .errors import AuthenticationError, ProviderError, RateLimitError, RequestCancelledError


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class CancelToken:
    """Cooperative cancellation shared by the caller and one adapter call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ChatOptions:
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    json: bool = False
    tools: Optional[List[Dict[str, Any]]] = None
    cancel: Optional[CancelToken] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class TokenUsage(BaseModel):
    input_tokens: NonNegativeInt = 0
    output_tokens: NonNegativeInt = 0
    cached_input_tokens: NonNegativeInt = 0


class PerfStats(BaseModel):
    # nanoseconds, as reported by local daemons
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None
    prompt_eval_duration: Optional[int] = None
    eval_duration: Optional[int] = None


class TextEvent(BaseModel):
    terminal: ClassVar[bool] = False

    type: Literal["text"] = "text"
    delta: str


class ToolCallEvent(BaseModel):
    terminal: ClassVar[bool] = False

    type: Literal["tool_call"] = "tool_call"
    calls: List[Dict[str, Any]]


class DoneEvent(BaseModel):
    terminal: ClassVar[bool] = True

    type: Literal["done"] = "done"
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    perf: Optional[PerfStats] = None


class ErrorEvent(BaseModel):
    terminal: ClassVar[bool] = True

    type: Literal["error"] = "error"
    message: str
    cancelled: bool = False
    status_code: Optional[int] = None
    retry_after: Optional[float] = None


StreamEvent = Annotated[
    Union[TextEvent, ToolCallEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]


class ChatResult(BaseModel):
    content: str = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None
    usage: Optional[TokenUsage] = None
    finish_reason: str = "stop"
    perf: Optional[PerfStats] = None


def error_event(exc: ProviderError) -> ErrorEvent:
    return ErrorEvent(
        message=exc.message,
        cancelled=isinstance(exc, RequestCancelledError),
        status_code=exc.status_code,
        retry_after=getattr(exc, "retry_after", None),
    )


def error_from_event(event: ErrorEvent, *, provider: str, model: Optional[str] = None) -> ProviderError:
    if event.cancelled:
        return RequestCancelledError(provider, model)
    if event.status_code == 401:
        return AuthenticationError(provider, model)
    if event.status_code == 429:
        return RateLimitError(provider, model, retry_after=event.retry_after)
    return ProviderError(event.message, provider, model, event.status_code)


async def collect_chat_result(
    events: AsyncIterable[Union[TextEvent, ToolCallEvent, DoneEvent, ErrorEvent]],
    *,
    provider: str = "unknown",
    model: Optional[str] = None,
) -> ChatResult:
    """Fold a uniform event stream into a single result.

    Text deltas are concatenated in order and tool calls are collected. The
    ``Done`` event supplies usage and finish reason. An ``Error`` event is
    raised as the matching :class:`ProviderError` subtype, except for a
    cancellation which yields ``finish_reason="cancelled"`` with whatever
    content had arrived.
    """
    parts: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    usage: Optional[TokenUsage] = None
    finish_reason = "stop"
    perf: Optional[PerfStats] = None

    async for event in events:
        if isinstance(event, TextEvent):
            parts.append(event.delta)
        elif isinstance(event, ToolCallEvent):
            tool_calls.extend(event.calls)
        elif isinstance(event, DoneEvent):
            usage = event.usage
            finish_reason = event.finish_reason or "stop"
            perf = event.perf
            break
        elif isinstance(event, ErrorEvent):
            if event.cancelled:
                finish_reason = "cancelled"
                break
            raise error_from_event(event, provider=provider, model=model)

    return ChatResult(
        content="".join(parts),
        tool_calls=tool_calls or None,
        usage=usage,
        finish_reason=finish_reason,
        perf=perf,
    )

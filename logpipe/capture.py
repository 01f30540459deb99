from __future__ import annotations

import asyncio
import logging
import re
import sys
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

import httpx

from .types import TelemetryItem, TelemetryKind

_SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie", "x-api-key", "proxy-authorization"}
_SENSITIVE_PARAMS = {"token", "access_token", "api_key", "apikey", "password", "secret"}
_REDACTED = "[REDACTED]"
_STARTED_KEY = "logpipe_started"
_IGNORED_LOGGERS = ("logpipe", "httpx", "httpcore", "websockets")
_LEVEL_ALIASES = {"warn": "warning", "log": "info", "fatal": "critical"}

DEFAULT_EXCLUDED_URLS = ("/health", "/ping", "/favicon.ico")

Matcher = Union[str, re.Pattern[str]]


class TelemetrySink(Protocol):
    def send(self, item: TelemetryItem) -> None:
        ...


def _matches(pattern: Matcher, text: str) -> bool:
    if isinstance(pattern, re.Pattern):
        return pattern.search(text) is not None
    return str(pattern) in text


def normalize_level(level: str) -> str:
    name = str(level).strip().lower()
    return _LEVEL_ALIASES.get(name, name)


@dataclass(slots=True)
class CaptureFilters:
    """Which log messages and network exchanges get captured.

    Patterns are plain substrings or compiled regular expressions. Exclusions
    win over inclusions; a non-empty include list must match at least once.
    ``levels=None`` captures every level.
    """

    levels: Optional[Sequence[str]] = None
    exclude_patterns: Sequence[Matcher] = ()
    include_patterns: Sequence[Matcher] = ()
    exclude_urls: Sequence[Matcher] = DEFAULT_EXCLUDED_URLS
    include_urls: Sequence[Matcher] = ()

    def __post_init__(self) -> None:
        if self.levels is not None:
            self.levels = tuple(normalize_level(level) for level in self.levels)

    def allows_message(self, level: str, message: str) -> bool:
        if self.levels is not None and normalize_level(level) not in self.levels:
            return False
        return _allowed(message, self.exclude_patterns, self.include_patterns)

    def allows_url(self, url: str) -> bool:
        return _allowed(url, self.exclude_urls, self.include_urls)


def _allowed(text: str, exclude: Sequence[Matcher], include: Sequence[Matcher]) -> bool:
    if any(_matches(pattern, text) for pattern in exclude):
        return False
    if include:
        return any(_matches(pattern, text) for pattern in include)
    return True


class TelemetryLogHandler(logging.Handler):
    """Forwards log records to a transport as ``log``/``error`` items."""

    def __init__(
        self,
        sink: TelemetrySink,
        level: int = logging.NOTSET,
        *,
        filters: Optional[CaptureFilters] = None,
    ) -> None:
        super().__init__(level)
        self.sink = sink
        self.capture_filters = filters or CaptureFilters()

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.split(".", 1)[0] in _IGNORED_LOGGERS:
            return
        try:
            item = record_to_item(record)
            if not self.capture_filters.allows_message(item.payload["level"], item.payload["message"]):
                return
            self.sink.send(item)
        except Exception:
            self.handleError(record)


def record_to_item(record: logging.LogRecord) -> TelemetryItem:
    payload: Dict[str, Any] = {
        "level": record.levelname.lower(),
        "message": record.getMessage(),
        "logger": record.name,
        "module": record.module,
        "line": record.lineno,
        "function": record.funcName,
    }
    kind = TelemetryKind.LOG
    if record.exc_info and record.exc_info[0] is not None:
        kind = TelemetryKind.ERROR
        exc_type, exc_value, exc_tb = record.exc_info
        payload["error"] = {
            "type": exc_type.__name__,
            "message": str(exc_value),
            "stack": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        }
    elif record.levelno >= logging.ERROR:
        kind = TelemetryKind.ERROR
    return TelemetryItem(kind=kind, payload=payload)


def error_to_item(exc: BaseException, *, context: Optional[Mapping[str, Any]] = None) -> TelemetryItem:
    return TelemetryItem(
        kind=TelemetryKind.ERROR,
        payload={
            "level": "error",
            "message": str(exc),
            "error": {
                "type": type(exc).__name__,
                "message": str(exc),
                "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            },
            "context": dict(context or {}),
        },
    )


def sanitize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        str(name): (_REDACTED if str(name).lower() in _SENSITIVE_HEADERS else str(value))
        for name, value in headers.items()
    }


def sanitize_url(url: httpx.URL | str) -> str:
    parsed = httpx.URL(str(url))
    if not parsed.params:
        return str(parsed)
    params = [
        (key, _REDACTED if key.lower() in _SENSITIVE_PARAMS else value)
        for key, value in parsed.params.multi_items()
    ]
    return str(parsed.copy_with(params=params))


def network_event_hooks(
    sink: TelemetrySink, filters: Optional[CaptureFilters] = None
) -> Dict[str, List[Callable[..., Any]]]:
    """Event hooks for ``httpx.AsyncClient`` that report each exchange."""
    filters = filters or CaptureFilters()

    async def on_request(request: httpx.Request) -> None:
        request.extensions[_STARTED_KEY] = time.perf_counter()

    async def on_response(response: httpx.Response) -> None:
        request = response.request
        if not filters.allows_url(str(request.url)):
            return
        started = request.extensions.get(_STARTED_KEY)
        duration_ms = (time.perf_counter() - started) * 1000.0 if isinstance(started, float) else None
        sink.send(
            TelemetryItem(
                kind=TelemetryKind.NETWORK,
                payload={
                    "method": request.method,
                    "url": sanitize_url(request.url),
                    "status": response.status_code,
                    "duration": duration_ms,
                    "requestHeaders": sanitize_headers(request.headers),
                    "responseHeaders": sanitize_headers(response.headers),
                },
            )
        )

    return {"request": [on_request], "response": [on_response]}


class ExceptionHooks:
    """Reports uncaught exceptions as ``error`` items.

    Covers ``sys.excepthook``, ``threading.excepthook`` and, when a loop is
    given, the loop's exception handler. Each hook chains to the one it
    replaced, and ``uninstall`` puts the previous hooks back.
    """

    def __init__(self, sink: TelemetrySink) -> None:
        self.sink = sink
        self.installed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_excepthook: Optional[Callable[..., Any]] = None
        self._previous_threading_hook: Optional[Callable[..., Any]] = None
        self._previous_loop_handler: Optional[Callable[..., Any]] = None

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self.installed:
            return
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._on_uncaught
        self._previous_threading_hook = threading.excepthook
        threading.excepthook = self._on_thread_error
        if loop is not None:
            self._loop = loop
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._on_loop_error)
        self.installed = True

    def uninstall(self) -> None:
        if not self.installed:
            return
        # Hooks replaced by someone else after us stay in place.
        if sys.excepthook == self._on_uncaught:
            sys.excepthook = self._previous_excepthook or sys.__excepthook__
        if threading.excepthook == self._on_thread_error:
            threading.excepthook = self._previous_threading_hook or threading.__excepthook__
        if self._loop is not None and not self._loop.is_closed():
            if self._loop.get_exception_handler() == self._on_loop_error:
                self._loop.set_exception_handler(self._previous_loop_handler)
        self._loop = None
        self.installed = False

    def _on_uncaught(self, exc_type: type, exc: BaseException, tb: Any) -> None:
        if not issubclass(exc_type, KeyboardInterrupt):
            self.sink.send(error_to_item(exc, context={"source": "uncaught"}))
        previous = self._previous_excepthook or sys.__excepthook__
        previous(exc_type, exc, tb)

    def _on_thread_error(self, args: Any) -> None:
        if args.exc_value is not None and not issubclass(args.exc_type, SystemExit):
            thread_name = args.thread.name if args.thread is not None else None
            self.sink.send(error_to_item(args.exc_value, context={"source": "thread", "thread": thread_name}))
        previous = self._previous_threading_hook or threading.__excepthook__
        previous(args)

    def _on_loop_error(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        message = str(context.get("message") or "unhandled error in event loop")
        exc = context.get("exception")
        if isinstance(exc, BaseException):
            self.sink.send(error_to_item(exc, context={"source": "asyncio", "message": message}))
        else:
            self.sink.send(
                TelemetryItem(
                    kind=TelemetryKind.ERROR,
                    payload={"level": "error", "message": message, "context": {"source": "asyncio"}},
                )
            )
        if self._previous_loop_handler is not None:
            self._previous_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)

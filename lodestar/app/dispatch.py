"""
Ordered path -> handler table.

A handler is any module (or object) that exposes the following hooks:

    def init(entry: HandlerEntry) -> None
        Optional. Called once at startup, raise an exception to disable the
        entry.

    def handler(entry, auth, request, captures) -> (status, meta, body)
        Required. Called for every request that reaches the entry. May also
        return a Deferred or a coroutine that produces the tuple.

    def fini(entry: HandlerEntry) -> None
        Optional. Called once when the server shuts down.
"""
from __future__ import annotations

import dataclasses
import importlib
import inspect
import traceback
import typing

from .auth import AuthContext, LogCallable
from .base import (
    MESSAGES,
    Captures,
    HandlerResult,
    Request,
    Response,
    RoutePattern,
    Status,
    add_extra_parameters,
)

if typing.TYPE_CHECKING:
    from ..config import HostConfig


class HandlerError(Exception):
    """
    Raised by a handler to fail the request with a logged message.

    Unlike other exceptions, the traceback is not written to the log.
    """


def not_found(
    entry: HandlerEntry, auth: AuthContext, request: Request, captures: Captures
) -> HandlerResult:
    """
    Stand-in for entries whose module could not be loaded.
    """
    return Status.NOT_FOUND, MESSAGES[Status.NOT_FOUND], b""


HandlerCallable = typing.Callable[..., typing.Any]


@dataclasses.dataclass(eq=False)
class HandlerEntry:
    """
    A single entry in the handler table of a virtual host.

    ``options`` holds the free-form, handler-specific configuration. Handlers
    can keep whatever they compute in ``init`` in the ``state`` dictionary.
    """

    pattern: RoutePattern
    module: typing.Any
    options: typing.Dict[str, typing.Any] = dataclasses.field(default_factory=dict)
    language: typing.Optional[str] = None
    charset: typing.Optional[str] = None
    host: typing.Optional[HostConfig] = None

    code: typing.Any = None
    handler: HandlerCallable = not_found
    state: typing.Dict[str, typing.Any] = dataclasses.field(default_factory=dict)

    @property
    def name(self) -> str:
        if isinstance(self.module, str):
            return self.module
        return getattr(self.module, "__name__", type(self.module).__name__)

    def get(self, key: str, default: typing.Any = None) -> typing.Any:
        return self.options.get(key, default)


def load_handler(entry: HandlerEntry, log_message: LogCallable) -> None:
    """
    Resolve the handler module of an entry and run its init hook.

    Any failure leaves the entry permanently mapped to the "not found" handler.
    """
    code = entry.module
    if isinstance(code, str):
        try:
            code = importlib.import_module(code)
        except Exception:
            log_message(
                f"error: {entry.name}: unable to load module\n"
                + traceback.format_exc()
            )
            return

    handler = getattr(code, "handler", None)
    if not callable(handler):
        log_message(f"error: {entry.name}: missing handler()")
        return

    init = getattr(code, "init", None)
    if init is not None:
        try:
            init(entry)
        except Exception:
            log_message(f"error: {entry.name}: init() failed\n" + traceback.format_exc())
            return

    entry.code = code
    entry.handler = handler


def finalize_handler(entry: HandlerEntry, log_message: LogCallable) -> None:
    """
    Run the fini hook of a successfully loaded entry.
    """
    fini = getattr(entry.code, "fini", None)
    if fini is None:
        return
    try:
        fini(entry)
    except Exception:
        log_message(f"error: {entry.name}: fini() failed\n" + traceback.format_exc())


def build_response(entry: HandlerEntry, result: typing.Any) -> Response:
    """
    Validate the (status, meta, body) tuple returned by a handler.
    """
    status, meta, body = result
    status = int(status)
    if not 10 <= status <= 69:
        raise ValueError(f"Invalid status code {status}")

    meta = str(meta)
    if "\r" in meta or "\n" in meta:
        raise ValueError("Invalid newline in response meta")

    if body is None:
        body = b""
    elif isinstance(body, str):
        body = body.encode("utf-8")
    elif not isinstance(body, bytes):
        raise TypeError(f"Invalid response body type {type(body).__name__}")

    if 20 <= status < 30:
        meta = add_extra_parameters(meta, entry.language, entry.charset)

    return Response(status, meta, body)


async def dispatch(
    entries: typing.Sequence[HandlerEntry],
    auth: AuthContext,
    request: Request,
    log_message: LogCallable,
) -> Response:
    """
    Invoke the first handler whose pattern matches the request path.

    Errors raised by the handler are logged and turned into a temporary
    failure, they never propagate beyond this request.
    """
    for entry in entries:
        captures = entry.pattern.match(request.path)
        if captures is None:
            continue

        try:
            result = entry.handler(entry, auth, request, captures)
            if inspect.isawaitable(result):
                result = await result
            return build_response(entry, result)
        except HandlerError as e:
            log_message(f"error: request={request.url!r} module={entry.name} {e}")
            return Response.from_status(Status.TEMPORARY_FAILURE)
        except Exception:
            log_message(
                f"error: request={request.url!r} module={entry.name}\n"
                + traceback.format_exc()
            )
            return Response.from_status(Status.TEMPORARY_FAILURE)

    log_message(
        f"warning: no handlers for {request.url!r} found, possible configuration error?"
    )
    return Response.from_status(Status.SERVER_UNAVAILABLE)

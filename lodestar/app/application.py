from __future__ import annotations

import typing

from .auth import AuthContext, LogCallable, authorize
from .base import Request, Response, Status
from .dispatch import dispatch

if typing.TYPE_CHECKING:
    from ..config import HostConfig, Interface


class GeminiApplication:
    """
    The request pipeline for the virtual hosts served on a single interface.

    Every request goes through the same steps, and the first step that
    produces a response ends the pipeline:

        parse -> resolve the virtual host -> authorize -> redirect -> dispatch

    The application never raises for a bad request or a failing handler, it
    always answers with a response. It is shared by every connection on the
    interface and keeps no per-request state.
    """

    def __init__(self, interface: Interface, log_message: LogCallable):
        self.interface = interface
        self.log_message = log_message

    def resolve_host(self, request: Request) -> typing.Optional[HostConfig]:
        """
        Find the virtual host that a request is addressed to.

        Requests for other schemes, other hosts, or a port that this host is
        not listening on are proxy requests, which are never served.
        """
        if request.scheme != "gemini":
            return None

        host = self.interface.get_host(request.hostname)
        if host is None:
            return None

        if request.port is not None and request.port != host.port:
            return None

        return host

    async def __call__(
        self, url: str, context: AuthContext
    ) -> typing.Tuple[Response, AuthContext]:
        """
        Process the request line and return the response.

        The returned context is the one that the request was authorized with,
        so the access log can record the certificate fields even when the
        authorization failed.
        """
        try:
            request = Request(url)
        except ValueError as e:
            self.log_message(f"info: bad request {url!r}: {e}")
            return Response.from_status(Status.BAD_REQUEST), context

        host = self.resolve_host(request)
        if host is None:
            return Response.from_status(Status.PROXY_REQUEST_REFUSED), context

        context, response = authorize(
            host.authorization, request, context, self.log_message
        )
        if response is not None:
            return response, context

        response = host.redirect.check(request.path)
        if response is not None:
            return response, context

        response = await dispatch(host.handlers, context, request, self.log_message)
        return response, context

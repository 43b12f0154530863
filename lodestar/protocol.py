from __future__ import annotations

import time
import traceback
import typing

from twisted.internet.address import IPv4Address, IPv6Address
from twisted.internet.defer import ensureDeferred
from twisted.protocols.basic import LineOnlyReceiver
from twisted.protocols.policies import TimeoutMixin

from .app.application import GeminiApplication
from .app.auth import AuthContext
from .app.base import MAX_REQUEST_LENGTH, Response, Status
from .tls import inspect_certificate

if typing.TYPE_CHECKING:
    from .server import GeminiServer


class GeminiProtocol(LineOnlyReceiver, TimeoutMixin):
    """
    Handle a single Gemini Protocol TCP request.

    A connection carries exactly one request. The protocol reads the request
    line, hands it to the application of the interface that accepted the
    connection, writes the response and closes the connection.

    The application is a coroutine that is wrapped with ensureDeferred(), so
    any I/O that it waits on (e.g. a CGI program) yields control of the event
    loop and other connections are handled concurrently.
    """

    TIMESTAMP_FORMAT = "%d/%b/%Y:%H:%M:%S %z"

    # Lines may end with either LF or CRLF, the CR is stripped off later
    delimiter = b"\n"
    MAX_LENGTH = MAX_REQUEST_LENGTH + 1

    client_addr: typing.Union[IPv4Address, IPv6Address]
    connected_timestamp: time.struct_time
    request: typing.Optional[bytes]
    url: str
    auth: typing.Optional[AuthContext]
    status: typing.Optional[int]
    meta: str
    response_size: int

    def __init__(
        self,
        server: GeminiServer,
        app: GeminiApplication,
        timeout: typing.Optional[float] = None,
    ):
        self.server = server
        self.app = app
        self.timeout = timeout
        self.callLater = server.reactor.callLater

    def connectionMade(self):
        """
        This is invoked by twisted after the connection is first established.
        """
        self.connected_timestamp = time.localtime()
        self.client_addr = self.transport.getPeer()
        self.request = None
        self.url = ""
        self.auth = None
        self.status = None
        self.meta = ""
        self.response_size = 0
        self.setTimeout(self.timeout)

    def connectionLost(self, reason=None):
        self.setTimeout(None)

    def timeoutConnection(self):
        """
        The client didn't finish sending the request line in time.
        """
        self.server.log_message(
            f"info: {self.client_addr.host} timed out before sending a request"
        )
        self.transport.abortConnection()

    def lineReceived(self, line: bytes):
        """
        This method is invoked by LineOnlyReceiver for every incoming line.

        Anything that the client sends after the first line is ignored.
        """
        if self.request is not None:
            return

        self.request = line
        self.setTimeout(None)
        self.server.track(ensureDeferred(self._handle_request_noblock()))

    def lineLengthExceeded(self, line: bytes):
        """
        The request line is longer than the protocol allows, don't wait for
        the rest of it.
        """
        if self.request is not None:
            return

        self.request = line
        self.setTimeout(None)
        self.url = line[:MAX_REQUEST_LENGTH].decode(errors="replace")
        self.finish(Response(Status.BAD_REQUEST, "Request too long"))

    async def _handle_request_noblock(self):
        """
        Handle the gemini request and write the raw response to the socket.

        Errors are never allowed to escape from here, because there is
        nobody left to report them to. An unexpected error becomes a
        temporary failure response for this one connection.
        """
        try:
            self.url = self.parse_header()
        except ValueError as e:
            self.server.log_message(f"info: bad request {self.url!r}: {e}")
            response = Response.from_status(Status.BAD_REQUEST)
        else:
            try:
                self.auth = self.build_auth_context()
                response, self.auth = await self.app(self.url, self.auth)
            except Exception:
                self.server.log_message(
                    f"error: request={self.url!r}\n" + traceback.format_exc()
                )
                response = Response.from_status(Status.TEMPORARY_FAILURE)

        self.finish(response)

    def parse_header(self) -> str:
        """
        Parse the gemini request line.

        The request is a single UTF-8 line formatted as: <URL>\r\n
        """
        assert self.request is not None
        request = self.request
        if request.endswith(b"\r"):
            request = request[:-1]

        url = request.decode(errors="replace")
        if len(request) > MAX_REQUEST_LENGTH:
            self.url = url
            raise ValueError("URL exceeds max length of 1024 bytes")

        try:
            return request.decode("utf-8")
        except UnicodeDecodeError:
            self.url = url
            raise

    def build_auth_context(self) -> AuthContext:
        """
        Collect the connection details that the authorization rules and the
        handlers can see.
        """
        conn = self.transport.getHandle()
        certificate = None
        cert = self.transport.getPeerCertificate()
        if cert:
            certificate = inspect_certificate(cert.to_cryptography())

        return AuthContext(
            remote_addr=self.client_addr.host,
            remote_port=self.client_addr.port,
            certificate=certificate,
            tls_cipher=conn.get_cipher_name(),
            tls_version=conn.get_protocol_version_name(),
        )

    def finish(self, response: Response) -> None:
        self.write_response(response)
        self.log_request()
        self.transport.loseConnection()

    def write_response(self, response: Response) -> None:
        """
        Write the gemini status line, and the body for successful responses.

        The status line is a single UTF-8 line formatted as:
            <code><space><meta>\r\n
        """
        self.status = response.status
        self.meta = response.meta

        data = response.header
        if 20 <= response.status < 30:
            data += response.body

        self.response_size = len(data)
        self.transport.write(data)

    def log_request(self) -> None:
        """
        Log a gemini request using a format derived from the Common Log Format.

        The subject and issuer of the client certificate are only known when
        an authorization rule looked at them.
        """
        if self.status is None:
            return

        subject = issuer = ""
        if self.auth is not None:
            subject, issuer = self.auth.subject_dn, self.auth.issuer_dn

        message = '{} [{}] "{}" {} {} {} subject="{}" issuer="{}"'.format(
            self.client_addr.host,
            time.strftime(self.TIMESTAMP_FORMAT, self.connected_timestamp),
            self.url,
            self.status,
            self.meta,
            self.response_size,
            subject,
            issuer,
        )
        self.server.log_access(message)

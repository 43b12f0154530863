"""
Common Gateway Interface support, following RFC 3875 where it applies to gemini.

The program is spawned through the twisted reactor, so reading its output
never blocks the other connections. The output is buffered in full before the
response is built, because the status and mimetype have to be decided from
the CGI header block before anything is sent to the client.
"""
from __future__ import annotations

import dataclasses
import datetime
import math
import os
import re
import typing
from urllib.parse import unquote

from twisted.internet import protocol
from twisted.internet import reactor as _reactor
from twisted.internet.defer import Deferred
from twisted.internet.error import ProcessDone, ProcessExitedAlready
from twisted.internet.task import LoopingCall

from ..__version__ import __version__
from .auth import AuthContext, parse_distinguished_name
from .base import MESSAGES, HandlerResult, Request, RoutePattern, Status
from .dispatch import HandlerError

# Seconds before a CGI program is killed
DEFAULT_TIMEOUT = 30.0

HEADER_END_RE = re.compile(rb"\r?\n\r?\n")
LINE_END_RE = re.compile(r"\r?\n")
TOKEN_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
STATUS_RE = re.compile(r"([0-9]+)\s*(.*)")
CGI_ARG_RE = re.compile(r"(?:%[0-9A-Fa-f]{2}|[!$'()*,\-./0-9:;?@A-Z_`a-z~])+")

HTTP_STATUS_MAP = {
    200: Status.SUCCESS,
    301: Status.REDIRECT_PERMANENT,
    302: Status.REDIRECT_TEMPORARY,
    303: Status.REDIRECT_TEMPORARY,
    307: Status.REDIRECT_TEMPORARY,
    308: Status.REDIRECT_PERMANENT,
    400: Status.BAD_REQUEST,
    404: Status.NOT_FOUND,
    410: Status.GONE,
}

HTTP_CLASS_MAP = {
    2: Status.SUCCESS,
    3: Status.REDIRECT_TEMPORARY,
    4: Status.PERMANENT_FAILURE,
    5: Status.TEMPORARY_FAILURE,
}


class CGIError(HandlerError):
    """
    The CGI program failed or produced output that can't be turned into a
    gemini response.
    """


@dataclasses.dataclass(frozen=True)
class CGIInstance:
    """
    Overrides applied to CGI programs whose request path matches a pattern.
    """

    cwd: typing.Optional[str] = None
    env: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)
    http: bool = False
    apache: bool = False
    envtls: bool = False
    timeout: typing.Optional[float] = None


@dataclasses.dataclass(frozen=True)
class CGIOptions:
    """
    CGI settings for a virtual host.

    Every instance block whose pattern matches the request path is applied,
    in order, on top of the host-wide settings.
    """

    cwd: typing.Optional[str] = None
    env: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)
    http: bool = False
    apache: bool = False
    envtls: bool = False
    timeout: typing.Optional[float] = DEFAULT_TIMEOUT
    instances: typing.Tuple[typing.Tuple[RoutePattern, CGIInstance], ...] = ()


def parse_cgi_args(query: typing.Optional[str]) -> typing.List[str]:
    """
    Build the program's command line from the query string (RFC 3875 4.4).

    Only queries without an unencoded "=" are used, they are split on "+" and
    each word is percent-decoded.
    """
    if not query or "=" in query:
        return []
    if query.endswith("+"):
        query = query[:-1]
    words = query.split("+")
    if not all(CGI_ARG_RE.fullmatch(word) for word in words):
        return []
    return [unquote(word, errors="surrogateescape") for word in words]


def gemini_status(code: int) -> int:
    """
    Translate an HTTP status code from a CGI program into a gemini status.

    Codes below 100 are assumed to already be gemini status codes.
    """
    if code < 100:
        return code
    if code in HTTP_STATUS_MAP:
        return HTTP_STATUS_MAP[code]
    return HTTP_CLASS_MAP.get(code // 100, Status.TEMPORARY_FAILURE)


def parse_cgi_response(data: bytes) -> typing.Tuple[typing.Dict[str, str], bytes]:
    """
    Split the program output into the header block and the body.

    Header names are returned lower-cased. Continuation lines are folded into
    the preceding header, and runs of whitespace are collapsed.
    """
    match = HEADER_END_RE.search(data)
    if not match:
        raise CGIError("CGI output is missing the end of the header block")

    block = data[: match.start()].decode("latin-1")
    body = data[match.end() :]

    lines: typing.List[str] = []
    for line in LINE_END_RE.split(block):
        if line[:1] in (" ", "\t"):
            if not lines:
                raise CGIError("CGI output starts with a continuation line")
            lines[-1] += " " + line.strip()
        else:
            lines.append(line)

    headers = {}
    for line in lines:
        name, sep, value = line.partition(":")
        if not sep or not TOKEN_RE.fullmatch(name):
            raise CGIError(f"Malformed CGI header {line!r}")
        headers[name.lower()] = " ".join(value.split())
    return headers, body


def build_cgi_result(headers: typing.Dict[str, str], body: bytes) -> HandlerResult:
    """
    Decide the gemini response from the parsed CGI headers.
    """
    reason = ""
    if "status" in headers:
        match = STATUS_RE.fullmatch(headers["status"])
        if not match:
            raise CGIError(f"Malformed CGI status {headers['status']!r}")
        code, reason = int(match[1]), match[2]
    elif "location" in headers:
        code = 301
    else:
        code = 200
    status = gemini_status(code)

    if "location" in headers:
        return status, headers["location"], b""

    if 20 <= status < 30:
        return status, headers.get("content-type", "text/plain"), body

    return status, reason or MESSAGES.get(status, ""), b""


def add_http_environment(env: typing.Dict[str, str]) -> None:
    env["REQUEST_METHOD"] = "GET"
    env["SERVER_PROTOCOL"] = "HTTP/1.0"
    env["HTTP_ACCEPT"] = "*/*"
    env["HTTP_ACCEPT_LANGUAGE"] = "*"
    env["HTTP_CONNECTION"] = "close"
    env["HTTP_HOST"] = env["SERVER_NAME"]
    env["HTTP_REFERER"] = ""
    env["HTTP_USER_AGENT"] = ""


def add_apache_environment(
    env: typing.Dict[str, str], document_root: str, program: str
) -> None:
    env["DOCUMENT_ROOT"] = document_root
    env["CONTEXT_DOCUMENT_ROOT"] = document_root
    env["CONTEXT_PREFIX"] = ""
    env["SCRIPT_FILENAME"] = program


def add_tls_environment(
    env: typing.Dict[str, str],
    auth: AuthContext,
    apache: bool,
    now: datetime.datetime,
) -> None:
    """
    Describe the client certificate, with either the native TLS_* names or
    the SSL_* names used by Apache's mod_ssl.
    """
    cert = auth.certificate
    if cert is None:
        return

    remain = str(math.floor((cert.not_after - now).total_seconds() / 86400))
    issuer = parse_distinguished_name(cert.issuer)
    subject = parse_distinguished_name(cert.subject)

    if not apache:
        env["TLS_CIPHER"] = auth.tls_cipher or ""
        env["TLS_VERSION"] = auth.tls_version or ""
        env["TLS_CLIENT_HASH"] = cert.fingerprint
        env["TLS_CLIENT_ISSUER"] = cert.issuer
        env["TLS_CLIENT_SUBJECT"] = cert.subject
        env["TLS_CLIENT_NOT_BEFORE"] = cert.not_before.strftime("%Y-%m-%dT%H:%M:%SZ")
        env["TLS_CLIENT_NOT_AFTER"] = cert.not_after.strftime("%Y-%m-%dT%H:%M:%SZ")
        env["TLS_CLIENT_REMAIN"] = remain
        env["TLS_CLIENT_SERIAL_NUMBER"] = str(cert.serial_number)
        issuer_prefix, subject_prefix = "TLS_CLIENT_ISSUER_", "TLS_CLIENT_SUBJECT_"
    else:
        env["SSL_CIPHER"] = auth.tls_cipher or ""
        env["SSL_PROTOCOL"] = auth.tls_version or ""
        env["SSL_CLIENT_I_DN"] = cert.issuer
        env["SSL_CLIENT_S_DN"] = cert.subject
        env["SSL_CLIENT_V_START"] = cert.not_before.strftime("%b %d %H:%M:%S %Y GMT")
        env["SSL_CLIENT_V_END"] = cert.not_after.strftime("%b %d %H:%M:%S %Y GMT")
        env["SSL_CLIENT_V_REMAIN"] = remain
        env["SSL_CLIENT_M_SERIAL"] = format(cert.serial_number, "X")
        env["SSL_TLS_SNI"] = env["SERVER_NAME"]
        issuer_prefix, subject_prefix = "SSL_CLIENT_I_DN_", "SSL_CLIENT_S_DN_"

    for name, value in issuer.items():
        env[issuer_prefix + name] = value
    for name, value in subject.items():
        env[subject_prefix + name] = value

    env["AUTH_TYPE"] = "Certificate"
    env["REMOTE_USER"] = subject.get("CN", "")


def build_environment(
    program: str,
    script_name: str,
    path_info: str,
    document_root: str,
    server_port: int,
    request: Request,
    auth: AuthContext,
    options: CGIOptions,
    now: typing.Optional[datetime.datetime] = None,
) -> typing.Tuple[typing.Dict[str, str], typing.Optional[str], typing.Optional[float]]:
    """
    Construct the environment, working directory and timeout for a program.
    """
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)

    env = {
        "GATEWAY_INTERFACE": "CGI/1.1",
        "QUERY_STRING": request.query or "",
        "REMOTE_ADDR": auth.remote_addr,
        "REMOTE_HOST": auth.remote_addr,
        "REQUEST_METHOD": "",
        "SCRIPT_NAME": script_name,
        "SERVER_NAME": request.hostname,
        "SERVER_PORT": str(server_port),
        "SERVER_PROTOCOL": "GEMINI",
        "SERVER_SOFTWARE": f"lodestar/{__version__}",
    }
    env.update(options.env)

    if path_info:
        env["PATH_INFO"] = path_info
        env["PATH_TRANSLATED"] = document_root.rstrip("/") + path_info

    cwd = options.cwd
    timeout = options.timeout

    if options.http:
        add_http_environment(env)
    if options.apache:
        add_apache_environment(env, document_root, program)
    if options.envtls:
        add_tls_environment(env, auth, options.apache, now)

    for pattern, instance in options.instances:
        if pattern.match(request.path) is None:
            continue
        if instance.cwd is not None:
            cwd = instance.cwd
        if instance.timeout is not None:
            timeout = instance.timeout
        if instance.http:
            add_http_environment(env)
        if instance.apache:
            add_apache_environment(env, document_root, program)
        if instance.envtls:
            add_tls_environment(env, auth, options.apache or instance.apache, now)
        env.update(instance.env)

    return env, cwd, timeout


class CGIInvocation(protocol.ProcessProtocol):
    """
    A single run of a CGI program.

    stdin and stderr of the child are connected to the null device, and stdout
    to a pipe that the reactor watches alongside the network connections. All
    other file descriptors are closed in the child by twisted.
    """

    # Seconds between attempts to reap the child after its output has ended
    REAP_INTERVAL = 0.05

    program: str
    args: typing.List[str]
    env: typing.Dict[str, str]
    cwd: typing.Optional[str]
    timeout: typing.Optional[float]
    output: bytes
    timed_out: bool

    def __init__(
        self,
        program: str,
        args: typing.List[str],
        env: typing.Dict[str, str],
        cwd: typing.Optional[str] = None,
        timeout: typing.Optional[float] = None,
        reactor: typing.Any = _reactor,
    ):
        self.program = program
        self.args = args
        self.env = env
        self.cwd = cwd
        self.timeout = timeout
        self.reactor = reactor
        self.output = b""
        self.timed_out = False
        self.finished: Deferred = Deferred()
        self._buffer: typing.List[bytes] = []
        self._timeout_call: typing.Any = None
        self._reaper: typing.Optional[LoopingCall] = None

    def start(self) -> Deferred:
        """
        Spawn the program, the returned deferred fires with the exit reason.
        """
        null_fd = os.open(os.devnull, os.O_RDWR)
        try:
            self.reactor.spawnProcess(
                self,
                self.program,
                self.args,
                env=self.env,
                path=self.cwd,
                childFDs={0: null_fd, 1: "r", 2: null_fd},
            )
        finally:
            os.close(null_fd)

        if self.timeout:
            self._timeout_call = self.reactor.callLater(self.timeout, self.kill)
        return self.finished

    def kill(self) -> None:
        """
        Kill the child and stop reading from it.

        Processes started by the program inherit its stdout, so the pipe is
        closed on our side as well. Otherwise the request would last until
        the last of them exits.
        """
        self._timeout_call = None
        self.timed_out = True
        try:
            self.transport.signalProcess("KILL")
        except ProcessExitedAlready:
            pass
        self.transport.loseConnection()

    def outReceived(self, data: bytes) -> None:
        self._buffer.append(data)

    def outConnectionLost(self) -> None:
        """
        The child closed its output, make sure that it gets reaped even when
        the reactor isn't handling SIGCHLD.
        """
        self._reaper = LoopingCall(self._reap)
        self._reaper.clock = self.reactor
        self._reaper.start(self.REAP_INTERVAL, now=False)

    def _reap(self) -> None:
        if self.transport.pid is not None:
            self.transport.reapProcess()

    def processEnded(self, reason: typing.Any) -> None:
        if self._reaper is not None and self._reaper.running:
            self._reaper.stop()
        if self._timeout_call is not None and self._timeout_call.active():
            self._timeout_call.cancel()

        self.output = b"".join(self._buffer)
        self._buffer = []
        self.finished.callback(reason.value)


async def execute(
    program: str,
    script_name: str,
    path_info: str,
    document_root: str,
    server_port: int,
    request: Request,
    auth: AuthContext,
    options: CGIOptions,
    reactor: typing.Any = _reactor,
) -> HandlerResult:
    """
    Run a CGI program and convert its output into a gemini response.

    Raises CGIError if the program can't be run, exits abnormally or is killed
    after the timeout.
    """
    program = os.path.abspath(program)
    env, cwd, timeout = build_environment(
        program,
        script_name,
        path_info,
        document_root,
        server_port,
        request,
        auth,
        options,
    )
    if cwd is not None and not os.path.isdir(cwd):
        raise CGIError(f"CGI cwd({cwd!r}) is not a directory")

    args = [program] + parse_cgi_args(request.query)
    invocation = CGIInvocation(program, args, env, cwd, timeout, reactor)
    reason = await invocation.start()

    if invocation.timed_out:
        raise CGIError(f"program={program!r} killed after {timeout} seconds")
    if not isinstance(reason, ProcessDone):
        raise CGIError(
            f"program={program!r} status={reason.exitCode} signal={reason.signal}"
        )

    headers, body = parse_cgi_response(invocation.output)
    return build_cgi_result(headers, body)

from __future__ import annotations

import dataclasses
import ipaddress
import re
import typing
from urllib.parse import unquote

import idna

# Gemini protocol limit for the length of the request URL, in bytes
MAX_REQUEST_LENGTH = 1024

DEFAULT_PORT = 1965

Captures = typing.Tuple[str, ...]
ResponseBody = typing.Union[None, str, bytes]
HandlerResult = typing.Tuple[int, str, ResponseBody]


class Status:
    """
    Gemini response status codes.
    """

    INPUT = 10
    SENSITIVE_INPUT = 11

    SUCCESS = 20

    REDIRECT_TEMPORARY = 30
    REDIRECT_PERMANENT = 31

    TEMPORARY_FAILURE = 40
    SERVER_UNAVAILABLE = 41

    PERMANENT_FAILURE = 50
    NOT_FOUND = 51
    GONE = 52
    PROXY_REQUEST_REFUSED = 53
    BAD_REQUEST = 59

    CLIENT_CERTIFICATE_REQUIRED = 60
    CERTIFICATE_NOT_AUTHORISED = 61
    CERTIFICATE_NOT_VALID = 62


MESSAGES = {
    Status.INPUT: "Input required",
    Status.SENSITIVE_INPUT: "Sensitive input required",
    Status.TEMPORARY_FAILURE: "Temporary failure",
    Status.SERVER_UNAVAILABLE: "No handler configured",
    Status.PERMANENT_FAILURE: "Permanent failure",
    Status.NOT_FOUND: "Not found",
    Status.GONE: "Gone",
    Status.PROXY_REQUEST_REFUSED: "Proxy request refused",
    Status.BAD_REQUEST: "Bad request",
    Status.CLIENT_CERTIFICATE_REQUIRED: "Certificate required",
    Status.CERTIFICATE_NOT_AUTHORISED: "Certificate rejected",
    Status.CERTIFICATE_NOT_VALID: "Certificate not valid",
}


URL_RE = re.compile(
    r"""
    (?P<scheme>[A-Za-z][A-Za-z0-9+.\-]*)://
    (?:(?P<user>[^/?#@]*)@)?
    (?P<host>\[[^\]/?#@]*\]|[^:/?#\[\]@]*)
    (?::(?P<port>[0-9]+))?
    (?P<path>/[^?#]*)?
    (?:\?(?P<query>[^#]*))?
    """,
    re.VERBOSE,
)

IPV4_RE = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+")
LABEL_RE = re.compile(r"(?!-)[a-z0-9_-]{1,63}(?<!-)")
INVALID_CHARS_RE = re.compile(r"[\x00-\x20\x7f]")


def parse_hostname(host: str) -> str:
    """
    Validate the host component of a request URL.

    Accepts an IPv4 literal, a bracketed IPv6 literal, or a DNS name. Unicode
    DNS names are converted to punycode (RFC 3490) so they can be compared
    against the configured virtual hosts.
    """
    if host.startswith("["):
        return "[{}]".format(ipaddress.IPv6Address(host[1:-1]).compressed)

    if IPV4_RE.fullmatch(host):
        return str(ipaddress.IPv4Address(host))

    if not host.isascii():
        host = idna.encode(host, uts46=True).decode("ascii")

    hostname = host.lower()
    labels = hostname[:-1] if hostname.endswith(".") else hostname
    if not labels or not all(LABEL_RE.fullmatch(x) for x in labels.split(".")):
        raise ValueError(f"Invalid hostname {host!r}")
    return hostname


class Request:
    """
    Object that encapsulates the parsed request line of a single gemini request.

    Raises ValueError for anything that should be answered with a bad request.
    """

    url: str
    scheme: str
    user: typing.Optional[str]
    hostname: str
    port: typing.Optional[int]
    path: str
    query: typing.Optional[str]

    def __init__(self, url: str):
        self.url = url

        if INVALID_CHARS_RE.search(url):
            raise ValueError("Invalid character in URL")

        url_parts = URL_RE.fullmatch(url)
        if not url_parts:
            raise ValueError("Malformed URL")

        self.scheme = url_parts["scheme"].lower()

        # gemini://username@host/... is forbidden
        self.user = url_parts["user"]
        if self.user is not None:
            raise ValueError("Invalid userinfo component")

        if not url_parts["host"]:
            raise ValueError("Missing hostname component")
        self.hostname = parse_hostname(url_parts["host"])

        if url_parts["port"] is None:
            self.port = None
        else:
            self.port = int(url_parts["port"])
            if not 0 < self.port < 65536:
                raise ValueError("Invalid port component")

        self.path = unquote(url_parts["path"] or "/", errors="strict")
        self.query = url_parts["query"]

        # Relative path resolution is the domain of the client, not the
        # server. Dot segments and empty segments are rejected, not normalized.
        if "//" in self.path or "\x00" in self.path:
            raise ValueError("Invalid path component")
        if any(segment in (".", "..") for segment in self.path.split("/")):
            raise ValueError("Relative path component")

    @property
    def effective_port(self) -> int:
        return DEFAULT_PORT if self.port is None else self.port


@dataclasses.dataclass
class Response:
    """
    Object that encapsulates information about a single gemini response.
    """

    status: int
    meta: str
    body: bytes = b""

    @classmethod
    def from_status(cls, status: int, meta: typing.Optional[str] = None) -> Response:
        return cls(status, MESSAGES.get(status, "") if meta is None else meta)

    @property
    def header(self) -> bytes:
        return f"{self.status} {self.meta}\r\n".encode()


@dataclasses.dataclass
class RoutePattern:
    """
    A regular expression matched against the request path.

    The match is unanchored, so patterns that need to match from the start of
    the path should begin with "^".
    """

    path: str = ".*"
    regex: typing.Pattern[str] = dataclasses.field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.regex = re.compile(self.path)

    def match(self, path: str) -> typing.Optional[Captures]:
        """
        Return the captured groups if the path matches this pattern.

        A pattern without any groups returns the whole match as its only
        capture. Groups that did not participate in the match are returned
        as empty strings.
        """
        match = self.regex.search(path)
        if match is None:
            return None
        if not self.regex.groups:
            return (match.group(0),)
        return match.groups("")


def add_extra_parameters(
    meta: str,
    language: typing.Optional[str] = None,
    charset: typing.Optional[str] = None,
) -> str:
    """
    Attach the default language and charset parameters to a text mimetype.
    """
    if not meta.startswith("text/"):
        return meta
    if language and "lang=" not in meta:
        meta += f"; lang={language}"
    if charset and "charset=" not in meta:
        meta += f"; charset={charset}"
    return meta

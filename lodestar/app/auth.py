from __future__ import annotations

import dataclasses
import datetime
import re
import traceback
import typing

from ..tls import PeerCertificate
from .base import Request, Response, RoutePattern, Status

NameFields = typing.Dict[str, str]
AuthCheck = typing.Callable[[NameFields, NameFields, Request], bool]
LogCallable = typing.Callable[[str], None]

DN_RECORD_RE = re.compile(r"/([A-Za-z]+)=([^/\x00-\x1f]*)")


def parse_distinguished_name(name: str) -> NameFields:
    """
    Decode a one-line distinguished name into a mapping of field -> value.

        >>> parse_distinguished_name("/C=US/O=Example/CN=alice")
        {'C': 'US', 'O': 'Example', 'CN': 'alice'}

    Parsing stops at the first record that isn't in the "/name=value" form,
    so a name that can't be decoded at all results in an empty mapping.
    """
    fields = {}
    position = 0
    while position < len(name):
        match = DN_RECORD_RE.match(name, position)
        if not match:
            break
        fields[match[1]] = match[2]
        position = match.end()
    return fields


@dataclasses.dataclass(frozen=True)
class AuthRule:
    """
    Require a client certificate accepted by ``check`` for matching paths.
    """

    pattern: RoutePattern
    check: AuthCheck


@dataclasses.dataclass(frozen=True)
class AuthContext:
    """
    Authentication information for a single request.

    The connection fields are always present. The certificate fields are only
    filled in when an authorization rule matched the request path and the
    client presented a certificate.
    """

    remote_addr: str
    remote_port: int
    certificate: typing.Optional[PeerCertificate] = None
    tls_cipher: typing.Optional[str] = None
    tls_version: typing.Optional[str] = None

    provided: bool = False
    issuer_dn: str = ""
    subject_dn: str = ""
    issuer: NameFields = dataclasses.field(default_factory=dict)
    subject: NameFields = dataclasses.field(default_factory=dict)
    not_before: typing.Optional[datetime.datetime] = None
    not_after: typing.Optional[datetime.datetime] = None
    now: typing.Optional[datetime.datetime] = None

    def with_certificate(self, now: datetime.datetime) -> AuthContext:
        """
        Return a copy with the client certificate fields decoded.
        """
        cert = self.certificate
        assert cert is not None
        return dataclasses.replace(
            self,
            provided=True,
            issuer_dn=cert.issuer,
            subject_dn=cert.subject,
            issuer=parse_distinguished_name(cert.issuer),
            subject=parse_distinguished_name(cert.subject),
            not_before=cert.not_before,
            not_after=cert.not_after,
            now=now,
        )


def authorize(
    rules: typing.Sequence[AuthRule],
    request: Request,
    context: AuthContext,
    log_message: LogCallable,
    now: typing.Optional[datetime.datetime] = None,
) -> typing.Tuple[AuthContext, typing.Optional[Response]]:
    """
    Check the request against the authorization rules of a virtual host.

    Only the first rule whose pattern matches the path is evaluated, whether
    it passes or fails. Returns the (possibly certificate-enriched) context,
    and a failure response if the request should not proceed.
    """
    for rule in rules:
        if rule.pattern.match(request.path) is None:
            continue

        if context.certificate is None:
            return context, Response.from_status(Status.CLIENT_CERTIFICATE_REQUIRED)

        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)
        context = context.with_certificate(now)

        if context.not_before and now < context.not_before:
            return context, Response(Status.CERTIFICATE_NOT_VALID, "Future certificate")
        if context.not_after and now > context.not_after:
            return context, Response(Status.CERTIFICATE_NOT_VALID, "Expired certificate")

        try:
            allowed = rule.check(context.issuer, context.subject, request)
        except Exception:
            log_message(
                f"error: authorization check {rule.pattern.path!r} raised\n"
                + traceback.format_exc()
            )
            return context, Response.from_status(Status.TEMPORARY_FAILURE)

        if not allowed:
            return context, Response.from_status(Status.CERTIFICATE_NOT_AUTHORISED)
        return context, None

    return context, None

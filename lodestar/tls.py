from __future__ import annotations

import base64
import dataclasses
import datetime
import os
import tempfile
import typing

import OpenSSL
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from twisted.internet.ssl import CertificateOptions, TLSVersion
from twisted.python.randbytes import secureRandom

COMMON_NAME = x509.NameOID.COMMON_NAME

# OpenSSL's one-line name format uses a few short names that differ from the
# RFC 4514 attribute names exposed by cryptography.
SHORT_NAMES = {
    x509.NameOID.EMAIL_ADDRESS: "emailAddress",
    x509.NameOID.SERIAL_NUMBER: "serialNumber",
    x509.NameOID.SURNAME: "SN",
    x509.NameOID.GIVEN_NAME: "GN",
    x509.NameOID.TITLE: "title",
}


@dataclasses.dataclass(frozen=True)
class PeerCertificate:
    """
    The fields of a client certificate that the request pipeline consumes.

    The issuer and subject are distinguished names in the OpenSSL one-line
    format, e.g. "/C=US/O=Example/CN=alice".
    """

    issuer: str
    subject: str
    not_before: datetime.datetime
    not_after: datetime.datetime
    fingerprint: str
    serial_number: int


def format_name(name: x509.Name) -> str:
    """
    Render a x509 name in the OpenSSL one-line format.
    """
    parts = []
    for attribute in name:
        key = SHORT_NAMES.get(attribute.oid, attribute.rfc4514_attribute_name)
        value = attribute.value
        if isinstance(value, bytes):
            value = value.decode(errors="replace")
        parts.append(f"/{key}={value}")
    return "".join(parts)


def inspect_certificate(cert: x509.Certificate) -> PeerCertificate:
    """
    Extract useful fields from a x509 client certificate object.
    """
    fingerprint_bytes = cert.fingerprint(hashes.SHA256())
    fingerprint = base64.urlsafe_b64encode(fingerprint_bytes).decode()

    return PeerCertificate(
        issuer=format_name(cert.issuer),
        subject=format_name(cert.subject),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint=fingerprint,
        serial_number=cert.serial_number,
    )


def generate_ad_hoc_certificate(
    hostname: str, directory: typing.Optional[str] = None
) -> typing.Tuple[str, str]:
    """
    Utility function to generate an ad-hoc self-signed SSL certificate.
    """
    directory = directory or tempfile.gettempdir()
    certfile = os.path.join(directory, f"{hostname}.crt")
    keyfile = os.path.join(directory, f"{hostname}.key")

    if not os.path.exists(certfile) or not os.path.exists(keyfile):
        private_key = rsa.generate_private_key(65537, 2048)
        with open(keyfile, "wb") as fp:
            # noinspection PyTypeChecker
            key_data = private_key.private_bytes(
                serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
            fp.write(key_data)

        common_name = x509.NameAttribute(COMMON_NAME, hostname)
        subject_name = x509.Name([common_name])
        not_valid_before = datetime.datetime.now(datetime.timezone.utc)
        not_valid_after = not_valid_before + datetime.timedelta(days=365)
        certificate = x509.CertificateBuilder(
            subject_name=subject_name,
            issuer_name=subject_name,
            public_key=private_key.public_key(),
            serial_number=x509.random_serial_number(),
            not_valid_before=not_valid_before,
            not_valid_after=not_valid_after,
        )
        certificate = certificate.sign(private_key, hashes.SHA256())
        with open(certfile, "wb") as fp:
            # noinspection PyTypeChecker
            cert_data = certificate.public_bytes(serialization.Encoding.PEM)
            fp.write(cert_data)

    return certfile, keyfile


class GeminiCertificateOptions(CertificateOptions):
    """
    CertificateOptions is a factory function that twisted provides to do all of
    the confusing PyOpenSSL configuration for you. Unfortunately, their built-in
    class doesn't support the verify callback or selecting between several
    certificates with SNI, so I had to subclass and add custom behavior.

    The first certificate in the list is used when the client does not send a
    server name, or sends one that we don't have a certificate for.

    References:
        https://twistedmatrix.com/documents/16.1.1/core/howto/ssl.html
        https://github.com/urllib3/urllib3/blob/master/src/urllib3/util/ssl_.py
        https://github.com/twisted/twisted/blob/trunk/src/twisted/internet/_sslverify.py
    """

    certificates: typing.List[typing.Tuple[str, str, str]]
    sni_contexts: typing.Dict[str, OpenSSL.SSL.Context]

    def verify_callback(
        self,
        conn: OpenSSL.SSL.Connection,
        cert: OpenSSL.crypto.X509,
        errno: int,
        depth: int,
        preverify_ok: int,
    ) -> bool:
        """
        Callback used by OpenSSL for client certificate verification.

        Return True to allow unverified, self-signed client certificates.
        Whether a certificate is acceptable is decided later by the
        authorization rules of the virtual host, based on the certificate
        fields and validity window.
        """
        return True

    def sni_callback(self, conn: OpenSSL.SSL.Connection) -> None:
        """
        Callback used by OpenSSL for SNI support.

        We inspect the servername requested by the client using
        conn.get_servername(), and attach the matching context using
        conn.set_context(new_context).
        """
        servername = conn.get_servername()
        if not servername:
            return

        ctx = self.sni_contexts.get(servername.decode(errors="replace").lower())
        if ctx is not None:
            conn.set_context(ctx)

    def __init__(self, certificates: typing.List[typing.Tuple[str, str, str]]) -> None:
        if not certificates:
            raise ValueError("At least one certificate is required")

        self.certificates = certificates
        self.sni_contexts = {}

        super().__init__(
            raiseMinimumTo=TLSVersion.TLSv1_2,
            requireCertificate=False,
            fixBrokenPeers=True,
        )

    def _makeContext(self) -> OpenSSL.SSL.Context:
        """
        Build the default context, plus one context per additional hostname.
        """
        default_ctx = None
        for hostname, certfile, keyfile in self.certificates:
            ctx = self._make_host_context(certfile, keyfile)
            self.sni_contexts.setdefault(hostname.lower(), ctx)
            if default_ctx is None:
                default_ctx = ctx

        assert default_ctx is not None
        default_ctx.set_tlsext_servername_callback(self.sni_callback)
        return default_ctx

    def _make_host_context(self, certfile: str, keyfile: str) -> OpenSSL.SSL.Context:
        """
        Most of this code is copied directly from the parent class method.
        """
        ctx = self._contextFactory(self.method)
        ctx.set_options(self._options)
        ctx.set_mode(self._mode)

        ctx.use_certificate_file(certfile)
        ctx.use_privatekey_file(keyfile)
        # Sanity check
        ctx.check_privatekey()

        verify_flags = OpenSSL.SSL.VERIFY_PEER
        if self.requireCertificate:
            verify_flags |= OpenSSL.SSL.VERIFY_FAIL_IF_NO_PEER_CERT
        if self.verifyOnce:
            verify_flags |= OpenSSL.SSL.VERIFY_CLIENT_ONCE

        ctx.set_verify(verify_flags, self.verify_callback)
        if self.verifyDepth is not None:
            ctx.set_verify_depth(self.verifyDepth)

        if self.enableSessions:
            session_name = secureRandom(32)
            ctx.set_session_id(session_name)

        ctx.set_cipher_list(self._cipherString.encode("ascii"))

        self._ecChooser.configureECDHCurve(ctx)

        return ctx

import datetime
from types import SimpleNamespace
from unittest import TestCase

from conftest import run
from lodestar.app.application import GeminiApplication
from lodestar.app.auth import AuthContext
from lodestar.app.base import Response
from lodestar.config import build_config
from lodestar.tls import PeerCertificate


def make_certificate(common_name, days=1):
    now = datetime.datetime.now(datetime.timezone.utc)
    return PeerCertificate(
        issuer="/CN=Example CA",
        subject=f"/CN={common_name}",
        not_before=now - datetime.timedelta(days=days + 1),
        not_after=now + datetime.timedelta(days=days),
        fingerprint="fingerprint",
        serial_number=1,
    )


class GeminiApplicationTestCase(TestCase):
    def setUp(self):
        self.messages = []
        self.calls = []

        def handler(entry, auth, request, captures):
            self.calls.append((entry.get("name"), captures))
            return 20, "text/gemini", f"# {entry.get('name')}\n"

        module = SimpleNamespace(handler=handler)
        config = build_config(
            {
                "language": "en",
                "hosts": {
                    "example.com": {
                        "certificate": "example.crt",
                        "keyfile": "example.key",
                        "authorization": [
                            {
                                "path": "^/private/",
                                "check": lambda issuer, subject, request: subject["CN"] == "alice",
                            },
                        ],
                        "redirect": {
                            "temporary": [("^/old/(.*)", "/new/$1"), ("^/private/old", "/x")],
                            "gone": ["^/sample/gone"],
                        },
                        "handlers": [
                            {"path": "^/sample/(.*)", "module": module, "name": "sample"},
                            {"path": "^/sample/", "module": module, "name": "shadowed"},
                            {"path": "^/", "module": module, "name": "default"},
                        ],
                    },
                    "example.net": {
                        "certificate": "example.crt",
                        "keyfile": "example.key",
                        "handlers": [{"path": "^/only/", "module": module, "name": "net"}],
                    },
                    "example.org": {
                        "certificate": "example.crt",
                        "keyfile": "example.key",
                        "address": ":1966",
                        "handlers": [{"path": ".*", "module": module, "name": "org"}],
                    },
                },
            },
            self.messages.append,
        )
        self.app = GeminiApplication(config.interfaces[("::", 1965)], self.messages.append)

    def request(self, url, certificate=None):
        context = AuthContext("127.0.0.1", 50000, certificate=certificate)
        return run(self.app(url, context))

    def test_handler(self):
        response, context = self.request("gemini://example.com/sample/foo")
        assert response == Response(20, "text/gemini; lang=en", b"# sample\n")
        assert self.calls == [("sample", ("foo",))]
        assert not context.provided

    def test_first_handler_wins(self):
        self.request("gemini://example.com/sample/")
        assert [name for name, _ in self.calls] == ["sample"]

    def test_bad_request(self):
        response, _ = self.request("gemini://example.com/a/../b")
        assert response == Response(59, "Bad request")
        assert self.calls == []

    def test_unknown_scheme(self):
        response, _ = self.request("https://example.com/")
        assert response == Response(53, "Proxy request refused")

    def test_unknown_host(self):
        response, _ = self.request("gemini://example.edu/")
        assert response.status == 53

    def test_host_on_other_interface(self):
        response, _ = self.request("gemini://example.org/")
        assert response.status == 53

    def test_explicit_port(self):
        response, _ = self.request("gemini://example.com:1965/")
        assert response.status == 20
        response, _ = self.request("gemini://example.com:1966/")
        assert response.status == 53

    def test_hostname_case(self):
        response, _ = self.request("gemini://EXAMPLE.com/")
        assert response.status == 20

    def test_virtual_hosts(self):
        response, _ = self.request("gemini://example.net/only/")
        assert response.body == b"# net\n"

    def test_no_handler(self):
        response, _ = self.request("gemini://example.net/other")
        assert response == Response(41, "No handler configured")
        assert any(m.startswith("warning:") for m in self.messages)

    def test_certificate_required(self):
        response, _ = self.request("gemini://example.com/private/page")
        assert response == Response(60, "Certificate required")
        assert self.calls == []

    def test_authorization_before_redirect(self):
        response, _ = self.request("gemini://example.com/private/old")
        assert response.status == 60

    def test_authorized(self):
        response, context = self.request(
            "gemini://example.com/private/page", make_certificate("alice")
        )
        assert response.body == b"# default\n"
        assert context.provided
        assert context.subject_dn == "/CN=alice"

    def test_authorized_redirect(self):
        response, _ = self.request(
            "gemini://example.com/private/old", make_certificate("alice")
        )
        assert response == Response(30, "/x")

    def test_rejected(self):
        response, context = self.request(
            "gemini://example.com/private/page", make_certificate("bob")
        )
        assert response.status == 61
        assert context.subject_dn == "/CN=bob"

    def test_expired(self):
        response, _ = self.request(
            "gemini://example.com/private/page", make_certificate("alice", days=-1)
        )
        assert response == Response(62, "Expired certificate")

    def test_redirect(self):
        response, _ = self.request("gemini://example.com/old/page")
        assert response == Response(30, "/new/page")
        assert self.calls == []

    def test_gone_before_handlers(self):
        response, _ = self.request("gemini://example.com/sample/gone")
        assert response == Response(52, "Gone")
        assert self.calls == []

    def test_idempotent(self):
        first, _ = self.request("gemini://example.com/sample/foo")
        second, _ = self.request("gemini://example.com/sample/foo")
        assert (first.status, first.meta) == (second.status, second.meta)

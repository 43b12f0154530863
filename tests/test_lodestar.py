import datetime
import json
import os
import shlex
import socket
import ssl
import sys
import time
from threading import Thread
from types import SimpleNamespace
from unittest import TestCase

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from twisted.internet import reactor

from lodestar import GeminiServer, build_config
from lodestar.tls import generate_ad_hoc_certificate

# CGI programs are shell wrappers around the running interpreter, so the tests
# don't depend on the length of the interpreter path or on $PATH.
CGI_TEMPLATE = """#!/bin/sh
exec {python} - "$@" <<'EOF'
{code}
EOF
"""

CGI_SCRIPTS = {
    "env.py": """
import json, os, sys
sys.stdout.write("Status: 200\\r\\nContent-Type: application/json\\r\\n\\r\\n")
sys.stdout.write(json.dumps(dict(os.environ)))
""",
    "args.py": """
import json, sys
sys.stdout.write("Content-Type: application/json\\n\\n")
sys.stdout.write(json.dumps(sys.argv[1:]))
""",
    "redirect.py": """
import sys
sys.stdout.write("Status: 301\\r\\nLocation: /x\\r\\n\\r\\n")
sys.stdout.write("this body is never sent")
""",
    "fail.py": """
import sys
sys.stdout.write("Status: 200\\r\\nContent-Type: text/plain\\r\\n\\r\\nhello")
sys.exit(3)
""",
    "slow.py": """
import time
time.sleep(10)
""",
}


def boom(entry, auth, request, captures):
    raise RuntimeError("handler exploded")


def make_client_certificate(directory, name, common_name, days_valid=30, expired=False):
    """
    Generate a self-signed client certificate and key.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name(
        [
            x509.NameAttribute(x509.NameOID.ORGANIZATION_NAME, "Example"),
            x509.NameAttribute(x509.NameOID.COMMON_NAME, common_name),
        ]
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    if expired:
        not_before, not_after = now - datetime.timedelta(days=10), now - datetime.timedelta(days=1)
    else:
        not_before, not_after = now - datetime.timedelta(days=1), now + datetime.timedelta(days=days_valid)

    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )

    certfile = directory / f"{name}.crt"
    keyfile = directory / f"{name}.key"
    certfile.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    keyfile.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(certfile), str(keyfile)


class GeminiTestServer(GeminiServer):
    """
    Collect the logs instead of printing them.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.access_log = []
        self.messages = []

    def log_access(self, message: str) -> None:
        self.access_log.append(message)

    def log_message(self, message: str) -> None:
        self.messages.append(message)


def build_document_root(root):
    root.mkdir()
    (root / "index.gmi").write_text("# Welcome\n")
    (root / ".secret").write_text("hidden\n")
    (root / "files").mkdir()
    (root / "files" / "test.txt").write_text("this is a file\n")
    (root / "files" / "image.png").write_bytes(b"\x89PNG")
    (root / "files" / "notes.txt~").write_text("backup\n")

    cgi_bin = root / "cgi-bin"
    cgi_bin.mkdir()
    python = shlex.quote(sys.executable)
    for name, code in CGI_SCRIPTS.items():
        script = cgi_bin / name
        script.write_text(CGI_TEMPLATE.format(python=python, code=code.strip()))
        script.chmod(0o755)

    # The sleep outlives the shell when it's killed, and holds on to stdout
    script = cgi_bin / "sleep.sh"
    script.write_text("#!/bin/sh\nsleep 4\necho done\n")
    script.chmod(0o755)

    # Executable bit is required for CGI
    (cgi_bin / "plain.txt").write_text("not a program\n")


@pytest.fixture(scope="session")
def lodestar_server(tmp_path_factory):
    """
    Setup a twisted reactor thread that will run in the background for
    the entire test suite. The reactor can only be started once per
    interpreter, so the server is bound before the reactor starts and is
    shared by every test.
    """
    directory = tmp_path_factory.mktemp("lodestar")
    build_document_root(directory / "docroot")
    certfile, keyfile = generate_ad_hoc_certificate("localhost", str(directory))

    namespace = {
        "address": "127.0.0.1:0",
        "language": "en",
        "timeout": 5,
        "hosts": {
            "localhost": {
                "certificate": certfile,
                "keyfile": keyfile,
                "authorization": [
                    {
                        "path": "^/private/",
                        "check": lambda issuer, subject, request: subject.get("CN") == "alice",
                    },
                ],
                "redirect": {
                    "temporary": [("^/old/(.*)", "/new/$1")],
                    "gone": ["^/gone"],
                },
                "handlers": [
                    {"path": "^/sample/(.*)", "module": "lodestar.handlers.sample"},
                    {"path": "^/private/", "module": "lodestar.handlers.sample"},
                    {"path": "^/boom$", "module": SimpleNamespace(handler=boom)},
                    {
                        "path": "^/",
                        "module": "lodestar.handlers.filesystem",
                        "directory": str(directory / "docroot"),
                    },
                ],
                "cgi": {
                    "env": {"PATH": os.environ.get("PATH", "/usr/bin:/bin")},
                    "envtls": True,
                    "instance": {
                        "^/cgi-bin/slow.py": {"timeout": 0.5},
                        "^/cgi-bin/sleep.sh": {"timeout": 0.5},
                        "^/cgi-bin/env.py/http": {"http": True},
                    },
                },
            },
        },
    }
    messages = []
    config = build_config(namespace, messages.append)
    server = GeminiTestServer(config, reactor=reactor)
    server.initialize()
    server.client_certificates = {
        "alice": make_client_certificate(directory, "alice", "alice"),
        "bob": make_client_certificate(directory, "bob", "bob"),
        "expired": make_client_certificate(directory, "expired", "alice", expired=True),
    }

    thread = Thread(target=reactor.run, args=(False,))
    thread.start()
    try:
        yield server
    finally:
        reactor.callFromThread(reactor.stop)
        thread.join(timeout=5)


class GeminiServerTestCase(TestCase):
    """
    Send real gemini requests over TLS to a complete lodestar server running
    in the reactor thread, and check the raw responses from end to end.
    """

    server: GeminiTestServer

    @pytest.fixture(autouse=True)
    def _server(self, lodestar_server):
        self.server = lodestar_server

    def create_context(self, certificate=None):
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        if certificate is not None:
            context.load_cert_chain(*self.server.client_certificates[certificate])
        return context

    def get_conn_info(self):
        interface = next(iter(self.server.config.interfaces.values()))
        return interface.address, interface.port

    def connect(self, data: bytes, certificate=None):
        context = self.create_context(certificate)
        sock = socket.create_connection(self.get_conn_info())
        ssock = context.wrap_socket(sock, server_hostname="localhost")
        ssock.sendall(data)
        return ssock

    def request(self, data: str, certificate=None):
        with self.connect(data.encode(), certificate) as ssock:
            fp = ssock.makefile("rb")
            return fp.read().decode(errors="surrogateescape")

    def parse_json(self, response):
        header, body = response.split("\r\n", 1)
        assert header == "20 application/json"
        return json.loads(body)

    def test_index(self):
        resp = self.request("gemini://localhost/\r\n")
        assert resp == "20 text/gemini; lang=en\r\n# Welcome\n"

    def test_index_empty_path(self):
        resp = self.request("gemini://localhost\r\n")
        assert resp == "20 text/gemini; lang=en\r\n# Welcome\n"

    def test_lf_terminator(self):
        resp = self.request("gemini://localhost/\n")
        assert resp == "20 text/gemini; lang=en\r\n# Welcome\n"

    def test_hostname_case_insensitive(self):
        resp = self.request("gemini://LocalHost/\r\n")
        assert resp == "20 text/gemini; lang=en\r\n# Welcome\n"

    def test_explicit_port(self):
        port = self.get_conn_info()[1]
        resp = self.request(f"gemini://localhost:{port}/\r\n")
        assert resp.startswith("20 ")

    def test_file(self):
        resp = self.request("gemini://localhost/files/test.txt\r\n")
        assert resp == "20 text/plain; lang=en\r\nthis is a file\n"

    def test_file_escaped(self):
        resp = self.request("gemini://localhost/files/tes%74.txt\r\n")
        assert resp == "20 text/plain; lang=en\r\nthis is a file\n"

    def test_binary_file(self):
        with self.connect(b"gemini://localhost/files/image.png\r\n") as ssock:
            resp = ssock.makefile("rb").read()
        assert resp == b"20 image/png\r\n\x89PNG"

    def test_directory_redirect(self):
        resp = self.request("gemini://localhost/files\r\n")
        assert resp == "31 gemini://localhost/files/\r\n"

    def test_directory_listing(self):
        resp = self.request("gemini://localhost/files/\r\n")
        header, body = resp.split("\r\n", 1)
        assert header == "20 text/gemini; lang=en"
        assert "=> test.txt test.txt\n" in body
        assert "notes.txt~" not in body

    def test_hidden_file(self):
        resp = self.request("gemini://localhost/.secret\r\n")
        assert resp == "51 Not found\r\n"

    def test_backup_file(self):
        resp = self.request("gemini://localhost/files/notes.txt~\r\n")
        assert resp == "51 Not found\r\n"

    def test_missing_file(self):
        resp = self.request("gemini://localhost/missing.gmi\r\n")
        assert resp == "51 Not found\r\n"

    def test_parent_directory(self):
        resp = self.request("gemini://localhost/files/../index.gmi\r\n")
        assert resp == "59 Bad request\r\n"

    def test_double_slash(self):
        resp = self.request("gemini://localhost//files/test.txt\r\n")
        assert resp == "59 Bad request\r\n"

    def test_userinfo(self):
        resp = self.request("gemini://nancy@localhost/\r\n")
        assert resp == "59 Bad request\r\n"

    def test_missing_scheme(self):
        resp = self.request("//localhost/\r\n")
        assert resp == "59 Bad request\r\n"

    def test_non_utf8(self):
        with self.connect(b"gemini://localhost/\xff\r\n") as ssock:
            resp = ssock.makefile("rb").read()
        assert resp == b"59 Bad request\r\n"

    def test_request_too_long(self):
        url = "gemini://localhost/" + "a" * 1100
        resp = self.request(url + "\r\n")
        assert resp == "59 Request too long\r\n"

    def test_request_max_length(self):
        url = "gemini://localhost/"
        url += "a" * (1024 - len(url))
        resp = self.request(url + "\r\n")
        assert resp == "51 Not found\r\n"

    def test_invalid_scheme(self):
        resp = self.request("https://localhost/\r\n")
        assert resp == "53 Proxy request refused\r\n"

    def test_invalid_hostname(self):
        resp = self.request("gemini://example.com/\r\n")
        assert resp == "53 Proxy request refused\r\n"

    def test_invalid_port(self):
        resp = self.request("gemini://localhost:1/\r\n")
        assert resp == "53 Proxy request refused\r\n"

    def test_sample_handler(self):
        resp = self.request("gemini://localhost/sample/foo\r\n")
        header, body = resp.split("\r\n", 1)
        assert header == "20 text/gemini; lang=en"
        assert "capture 1: foo\n" in body
        assert "remote: 127.0.0.1\n" in body

    def test_redirect(self):
        resp = self.request("gemini://localhost/old/page\r\n")
        assert resp == "30 /new/page\r\n"

    def test_gone(self):
        resp = self.request("gemini://localhost/gone\r\n")
        assert resp == "52 Gone\r\n"

    def test_handler_error(self):
        resp = self.request("gemini://localhost/boom\r\n")
        assert resp == "40 Temporary failure\r\n"
        assert any("handler exploded" in m for m in self.server.messages)

    def test_certificate_required(self):
        resp = self.request("gemini://localhost/private/\r\n")
        assert resp == "60 Certificate required\r\n"

    def test_certificate_accepted(self):
        resp = self.request("gemini://localhost/private/\r\n", certificate="alice")
        header, body = resp.split("\r\n", 1)
        assert header == "20 text/gemini; lang=en"
        assert "subject: /O=Example/CN=alice\n" in body

    def test_certificate_rejected(self):
        resp = self.request("gemini://localhost/private/\r\n", certificate="bob")
        assert resp == "61 Certificate rejected\r\n"

    def test_certificate_expired(self):
        resp = self.request("gemini://localhost/private/\r\n", certificate="expired")
        assert resp == "62 Expired certificate\r\n"

    def test_access_log(self):
        self.request("gemini://localhost/private/\r\n", certificate="bob")
        record = self.server.access_log[-1]
        assert record.startswith("127.0.0.1 [")
        assert '"gemini://localhost/private/" 61 Certificate rejected 25' in record
        assert 'subject="/O=Example/CN=bob"' in record
        assert 'issuer="/O=Example/CN=bob"' in record

    def test_cgi(self):
        resp = self.request("gemini://localhost/cgi-bin/env.py\r\n")
        data = self.parse_json(resp)
        assert data["GATEWAY_INTERFACE"] == "CGI/1.1"
        assert data["SCRIPT_NAME"] == "/cgi-bin/env.py"
        assert data["QUERY_STRING"] == ""
        assert data["REQUEST_METHOD"] == ""
        assert data["SERVER_NAME"] == "localhost"
        assert data["SERVER_PORT"] == str(self.get_conn_info()[1])
        assert data["SERVER_PROTOCOL"] == "GEMINI"
        assert data["REMOTE_ADDR"] == "127.0.0.1"
        assert data["SERVER_SOFTWARE"].startswith("lodestar/")
        assert "PATH_INFO" not in data
        assert "TLS_CLIENT_HASH" not in data

    def test_cgi_query(self):
        resp = self.request("gemini://localhost/cgi-bin/env.py?hello%20world\r\n")
        data = self.parse_json(resp)
        assert data["QUERY_STRING"] == "hello%20world"

    def test_cgi_path_info(self):
        resp = self.request("gemini://localhost/cgi-bin/env.py/extra/info\r\n")
        data = self.parse_json(resp)
        assert data["SCRIPT_NAME"] == "/cgi-bin/env.py"
        assert data["PATH_INFO"] == "/extra/info"
        assert data["PATH_TRANSLATED"].endswith("/docroot/extra/info")

    def test_cgi_path_info_trailing_slash(self):
        resp = self.request("gemini://localhost/cgi-bin/env.py/\r\n")
        data = self.parse_json(resp)
        assert data["PATH_INFO"] == "/"

    def test_cgi_instance(self):
        resp = self.request("gemini://localhost/cgi-bin/env.py/http\r\n")
        data = self.parse_json(resp)
        assert data["REQUEST_METHOD"] == "GET"
        assert data["SERVER_PROTOCOL"] == "HTTP/1.0"

    def test_cgi_tls(self):
        resp = self.request("gemini://localhost/cgi-bin/env.py\r\n", certificate="alice")
        data = self.parse_json(resp)
        assert data["TLS_CLIENT_SUBJECT_CN"] == "alice"
        assert data["TLS_CLIENT_ISSUER_O"] == "Example"
        assert data["AUTH_TYPE"] == "Certificate"
        assert data["REMOTE_USER"] == "alice"
        assert int(data["TLS_CLIENT_REMAIN"]) in (29, 30)
        assert data["TLS_VERSION"].startswith("TLSv1.")

    def test_cgi_args(self):
        resp = self.request("gemini://localhost/cgi-bin/args.py?hello+wor%20ld\r\n")
        assert self.parse_json(resp) == ["hello", "wor ld"]

    def test_cgi_redirect(self):
        resp = self.request("gemini://localhost/cgi-bin/redirect.py\r\n")
        assert resp == "31 /x\r\n"

    def test_cgi_exit_status(self):
        resp = self.request("gemini://localhost/cgi-bin/fail.py\r\n")
        assert resp == "40 Temporary failure\r\n"

    def test_cgi_not_executable(self):
        resp = self.request("gemini://localhost/cgi-bin/plain.txt\r\n")
        assert resp == "20 text/plain; lang=en\r\nnot a program\n"

    def test_cgi_timeout(self):
        start = time.monotonic()
        resp = self.request("gemini://localhost/cgi-bin/slow.py\r\n")
        assert resp == "40 Temporary failure\r\n"
        assert time.monotonic() - start < 5

    def test_cgi_timeout_with_subprocess(self):
        start = time.monotonic()
        resp = self.request("gemini://localhost/cgi-bin/sleep.sh\r\n")
        assert resp == "40 Temporary failure\r\n"
        assert time.monotonic() - start < 3

    def test_concurrent_requests(self):
        """
        A request that waits on a CGI program does not hold up the others.
        """
        with self.connect(b"gemini://localhost/cgi-bin/slow.py\r\n") as slow:
            resp = self.request("gemini://localhost/files/test.txt\r\n")
            assert resp == "20 text/plain; lang=en\r\nthis is a file\n"
            assert slow.makefile("rb").read() == b"40 Temporary failure\r\n"

"""
Load and validate the server configuration.

The configuration file is a python file, executed once at startup. The module
level names that it defines are read as the configuration. For example:

    address = "[::]:1965"
    language = "en"

    hosts = {
        "example.com": {
            "certificate": "/etc/lodestar/example.com.crt",
            "keyfile": "/etc/lodestar/example.com.key",
            "authorization": [
                {
                    "path": "^/private/",
                    "check": lambda issuer, subject, request: subject.get("CN") == "me",
                },
            ],
            "redirect": {
                "temporary": [("^/example1/(.*)", "/new-location/$1")],
                "permanent": [("^/example2/(.*)", "gemini://example.net/$1")],
                "gone": ["^/example3"],
            },
            "handlers": [
                {"path": "^/sample/(.*)", "module": "lodestar.handlers.sample"},
                {
                    "path": ".*",
                    "module": "lodestar.handlers.filesystem",
                    "directory": "/var/gemini",
                },
            ],
        },
    }

See examples/sample_conf.py for the full list of options.
"""
from __future__ import annotations

import collections.abc
import dataclasses
import re
import runpy
import sys
import typing

from .app.auth import AuthRule, LogCallable
from .app.base import DEFAULT_PORT, RoutePattern
from .app.cgi import DEFAULT_TIMEOUT, CGIInstance, CGIOptions
from .app.dispatch import HandlerEntry, finalize_handler, load_handler
from .app.redirect import RedirectRule, RedirectSet

DEFAULT_ADDRESS = f"[::]:{DEFAULT_PORT}"

# Seconds to wait for the client to send the request line
DEFAULT_REQUEST_TIMEOUT = 30.0

ADDRESS_RE = re.compile(r"(?P<host>\[[^\]]*\]|[^:\[\]]*)(?::(?P<port>[0-9]+))?")

# Keys of a handler block that are not passed through as handler options
HANDLER_KEYS = ("path", "module", "language", "charset")


class ConfigError(Exception):
    """
    The configuration is unusable and the server can't start.
    """


def default_log_message(message: str) -> None:
    print(message, file=sys.stderr)


@dataclasses.dataclass(eq=False)
class HostConfig:
    """
    A single virtual host.

    Built once at startup and shared by every connection, it must not be
    modified after the server starts.
    """

    hostname: str
    address: str
    port: int
    certificate: str
    keyfile: str
    language: typing.Optional[str] = None
    charset: typing.Optional[str] = None
    authorization: typing.Tuple[AuthRule, ...] = ()
    redirect: RedirectSet = dataclasses.field(default_factory=RedirectSet)
    handlers: typing.List[HandlerEntry] = dataclasses.field(default_factory=list)
    cgi: typing.Optional[CGIOptions] = None


@dataclasses.dataclass(eq=False)
class Interface:
    """
    A listening address, and the virtual hosts that are served on it.

    The first host is the TLS default for clients that don't send SNI.
    """

    address: str
    port: int
    hosts: typing.List[HostConfig] = dataclasses.field(default_factory=list)

    def get_host(self, hostname: str) -> typing.Optional[HostConfig]:
        for host in self.hosts:
            if host.hostname == hostname:
                return host
        return None

    @property
    def certificates(self) -> typing.List[typing.Tuple[str, str, str]]:
        return [(h.hostname, h.certificate, h.keyfile) for h in self.hosts]


@dataclasses.dataclass(eq=False)
class ServerConfig:
    address: str
    port: int
    language: typing.Optional[str] = None
    charset: typing.Optional[str] = None
    timeout: typing.Optional[float] = DEFAULT_REQUEST_TIMEOUT
    hosts: typing.Dict[str, HostConfig] = dataclasses.field(default_factory=dict)
    interfaces: typing.Dict[typing.Tuple[str, int], Interface] = dataclasses.field(
        default_factory=dict
    )

    def finalize(self, log_message: LogCallable) -> None:
        """
        Run the fini hooks of every loaded handler.
        """
        for host in self.hosts.values():
            for entry in host.handlers:
                finalize_handler(entry, log_message)


def parse_address(
    address: str,
    default_host: str,
    default_port: int,
    hostname: typing.Optional[str] = None,
) -> typing.Tuple[str, int]:
    """
    Parse "host:port" into its parts.

    A missing host or port is replaced with the default. A host of "@" is
    replaced with the name of the virtual host. IPv6 addresses are written in
    brackets, e.g. "[::1]:1965", and returned without them.
    """
    match = ADDRESS_RE.fullmatch(str(address))
    if not match:
        raise ConfigError(f"Syntax error with address {address!r}")

    host = match["host"]
    if host == "@":
        if hostname is None:
            raise ConfigError(f"Address {address!r} can only be used by a host")
        host = hostname
    elif not host:
        host = default_host
    elif host.startswith("["):
        host = host[1:-1]

    port = int(match["port"]) if match["port"] else default_port
    if not 0 <= port < 65536:
        raise ConfigError(f"Invalid port in address {address!r}")
    return host, port


def build_pattern(path: typing.Any, where: str) -> RoutePattern:
    if not isinstance(path, str):
        raise ConfigError(f"{where}: pattern must be a string, not {path!r}")
    try:
        return RoutePattern(path)
    except re.error as e:
        raise ConfigError(f"{where}: invalid pattern {path!r}: {e}") from e


def build_authorization(rules: typing.Any, where: str) -> typing.Tuple[AuthRule, ...]:
    result = []
    for rule in rules or ():
        if not isinstance(rule, collections.abc.Mapping):
            raise ConfigError(f"{where}: authorization rules must be mappings")
        if not callable(rule.get("check")):
            raise ConfigError(f"{where}: authorization rule is missing check()")
        pattern = build_pattern(rule.get("path"), where)
        result.append(AuthRule(pattern, rule["check"]))
    return tuple(result)


def build_redirect(redirect: typing.Any, where: str) -> RedirectSet:
    if not redirect:
        return RedirectSet()
    if not isinstance(redirect, collections.abc.Mapping):
        raise ConfigError(f"{where}: redirect must be a mapping")

    tables = {}
    for name in ("temporary", "permanent"):
        rules = []
        for rule in redirect.get(name) or ():
            if isinstance(rule, str) or len(rule) != 2:
                raise ConfigError(f"{where}: {name} redirects must be (pattern, location)")
            pattern, template = rule
            rules.append(RedirectRule(build_pattern(pattern, where), str(template)))
        tables[name] = tuple(rules)

    gone = tuple(build_pattern(p, where) for p in redirect.get("gone") or ())
    return RedirectSet(tables["temporary"], tables["permanent"], gone)


def build_cgi_instance(block: typing.Any, where: str) -> CGIInstance:
    if not isinstance(block, collections.abc.Mapping):
        raise ConfigError(f"{where}: CGI instance must be a mapping")
    timeout = block.get("timeout")
    return CGIInstance(
        cwd=block.get("cwd"),
        env={str(k): str(v) for k, v in (block.get("env") or {}).items()},
        http=bool(block.get("http")),
        apache=bool(block.get("apache")),
        envtls=bool(block.get("envtls")),
        timeout=None if timeout is None else float(timeout),
    )


def build_cgi(block: typing.Any, where: str) -> typing.Optional[CGIOptions]:
    if block is None:
        return None
    if not isinstance(block, collections.abc.Mapping):
        raise ConfigError(f"{where}: cgi must be a mapping")

    instances = block.get("instance") or {}
    if isinstance(instances, collections.abc.Mapping):
        instances = instances.items()

    timeout = block.get("timeout", DEFAULT_TIMEOUT)
    return CGIOptions(
        cwd=block.get("cwd"),
        env={str(k): str(v) for k, v in (block.get("env") or {}).items()},
        http=bool(block.get("http")),
        apache=bool(block.get("apache")),
        envtls=bool(block.get("envtls")),
        timeout=None if timeout is None else float(timeout),
        instances=tuple(
            (build_pattern(pattern, where), build_cgi_instance(info, where))
            for pattern, info in instances
        ),
    )


def build_handlers(
    host: HostConfig, blocks: typing.Any, log_message: LogCallable
) -> typing.List[HandlerEntry]:
    entries = []
    for block in blocks:
        if not isinstance(block, collections.abc.Mapping):
            raise ConfigError(f"{host.hostname}: handlers must be mappings")

        if "path" not in block:
            log_message(f"error: {host.hostname}: missing path field in handler")
            continue

        entry = HandlerEntry(
            pattern=build_pattern(block["path"], host.hostname),
            module=block.get("module"),
            options={k: v for k, v in block.items() if k not in HANDLER_KEYS},
            language=block.get("language", host.language),
            charset=block.get("charset", host.charset),
            host=host,
        )
        if entry.module is None:
            log_message(f"error: {host.hostname}: {block['path']}: missing module field")
        else:
            load_handler(entry, log_message)
        entries.append(entry)
    return entries


def build_config(
    namespace: typing.Mapping[str, typing.Any],
    log_message: LogCallable = default_log_message,
) -> ServerConfig:
    """
    Build the server configuration from the names defined by a config file.

    Problems that only affect a single host are logged and the host is
    excluded. Raises ConfigError if there's nothing left to serve.
    """
    hosts = namespace.get("hosts")
    if not hosts or not isinstance(hosts, collections.abc.Mapping):
        raise ConfigError("At least one host needs to be defined")

    for directory in namespace.get("modules") or ():
        if directory not in sys.path:
            sys.path.append(directory)

    address, port = parse_address(
        namespace.get("address", DEFAULT_ADDRESS), "::", DEFAULT_PORT
    )
    timeout = namespace.get("timeout", DEFAULT_REQUEST_TIMEOUT)
    config = ServerConfig(
        address=address,
        port=port,
        language=namespace.get("language"),
        charset=namespace.get("charset"),
        timeout=None if timeout is None else float(timeout),
    )

    for name, block in hosts.items():
        hostname = str(name).lower()
        if not isinstance(block, collections.abc.Mapping):
            raise ConfigError(f"Host {hostname!r} must be a mapping")

        if not block.get("certificate"):
            log_message(f"error: host {hostname!r} missing certificate, can't configure host")
        if not block.get("keyfile"):
            log_message(f"error: host {hostname!r} missing keyfile, can't configure host")
        if not block.get("certificate") or not block.get("keyfile"):
            continue

        host_address, host_port = parse_address(
            block.get("address", ""),
            address,
            port,
            hostname,
        )
        host = HostConfig(
            hostname=hostname,
            address=host_address,
            port=host_port,
            certificate=block["certificate"],
            keyfile=block["keyfile"],
            language=block.get("language", config.language),
            charset=block.get("charset", config.charset),
            authorization=build_authorization(block.get("authorization"), hostname),
            redirect=build_redirect(block.get("redirect"), hostname),
            cgi=build_cgi(block.get("cgi"), hostname),
        )

        if not block.get("handlers"):
            log_message(f"warning: host {hostname!r} has no handlers")
        else:
            host.handlers = build_handlers(host, block["handlers"], log_message)

        key = (host.address, host.port)
        if key not in config.interfaces:
            config.interfaces[key] = Interface(host.address, host.port)
        config.interfaces[key].hosts.append(host)
        config.hosts[hostname] = host

        log_message(f"info: host {hostname!r} configured")

    if not config.interfaces:
        raise ConfigError("At least one host needs to be configured")

    return config


def load_config(
    filename: str, log_message: LogCallable = default_log_message
) -> ServerConfig:
    """
    Execute a python configuration file and build the server configuration.
    """
    try:
        namespace = runpy.run_path(filename)
    except OSError as e:
        raise ConfigError(f"{filename}: {e.strerror}") from e
    except Exception as e:
        raise ConfigError(f"{filename}: {e}") from e
    return build_config(namespace, log_message)

from __future__ import annotations

import os
import socket
import sys
import typing

import OpenSSL
from twisted.internet import reactor as _reactor
from twisted.internet.defer import Deferred, DeferredList, maybeDeferred
from twisted.internet.endpoints import TCP4ServerEndpoint
from twisted.internet.protocol import Factory
from twisted.internet.tcp import Port
from twisted.protocols.tls import TLSMemoryBIOFactory
from twisted.python.failure import Failure

from .__version__ import __version__
from .app.application import GeminiApplication
from .config import ConfigError, Interface, ServerConfig
from .protocol import GeminiProtocol
from .tls import GeminiCertificateOptions

if sys.stderr.isatty():
    CYAN = "\033[36m\033[1m"
    RESET = "\033[0m"
else:
    CYAN = ""
    RESET = ""


ABOUT = rf"""
{CYAN}    __           __          __
   / /___  ____/ /__  _____/ /_____ ______
  / / __ \/ __  / _ \/ ___/ __/ __ `/ ___/
 / / /_/ / /_/ /  __(__  ) /_/ /_/ / /
/_/\____/\__,_/\___/____/\__/\__,_/_/{RESET}

A Gemini Server with virtual hosts and CGI, v{__version__}
"""


class GeminiInterface(Factory):
    """
    Protocol factory for a single listening address.

    Every connection accepted on the address shares the same application,
    which only knows about the virtual hosts served on that address.
    """

    protocol_class = GeminiProtocol

    def __init__(self, server: GeminiServer, interface: Interface):
        self.server = server
        self.interface = interface
        self.app = GeminiApplication(interface, server.log_message)

    def buildProtocol(self, addr: typing.Any) -> GeminiProtocol:
        """
        This method is invoked by twisted once for every incoming connection.

        It builds the instance of the protocol class, which is what actually
        implements the Gemini protocol.
        """
        return self.protocol_class(self.server, self.app, self.server.config.timeout)


class GeminiServer:
    """
    Wrapper around twisted's TCP server that handles most of the setup and
    plumbing for you.

    One TLS endpoint is bound for every interface in the configuration. The
    virtual hosts on an interface are selected by SNI during the handshake,
    and by the hostname of the request URL afterwards.
    """

    interface_class = GeminiInterface

    def __init__(self, config: ServerConfig, reactor: typing.Any = _reactor):
        self.config = config
        self.reactor = reactor
        self.ports: typing.List[Port] = []
        self.pending: typing.Set[Deferred] = set()
        self.exit_code = 0

    def log_access(self, message: str) -> None:
        """
        Log standard "access log"-type information.
        """
        print(message, file=sys.stdout)

    def log_message(self, message: str) -> None:
        """
        Log special messages like startup info or a traceback error.
        """
        print(message, file=sys.stderr)

    def on_bind_interface(self, port: Port, interface: Interface) -> None:
        """
        Log when the server binds to an interface.

        When the configuration asked for port 0, the port picked by the OS
        becomes the port of the interface and its hosts.
        """
        self.ports.append(port)

        sock_ip, sock_port, *_ = port.socket.getsockname()
        if interface.port == 0:
            interface.port = sock_port
            for host in interface.hosts:
                host.port = sock_port

        hostnames = ", ".join(host.hostname for host in interface.hosts)
        if port.addressFamily == socket.AF_INET:
            self.log_message(f"info: Listening on {sock_ip}:{sock_port} ({hostnames})")
        else:
            self.log_message(f"info: Listening on [{sock_ip}]:{sock_port} ({hostnames})")

    def on_bind_error(self, failure: Failure, interface: Interface) -> None:
        self.log_message(
            f"critical: unable to listen on {interface.address}:{interface.port}: "
            f"{failure.getErrorMessage()}"
        )
        self.exit_code = os.EX_OSERR

    def bind_interface(self, interface: Interface) -> Deferred:
        """
        Binds the server to a twisted interface.
        """
        try:
            ssl_context_factory = GeminiCertificateOptions(interface.certificates)
            protocol_factory = TLSMemoryBIOFactory(
                ssl_context_factory,
                False,
                self.interface_class(self, interface),
            )
        except (OSError, OpenSSL.SSL.Error) as e:
            hostnames = ", ".join(host.hostname for host in interface.hosts)
            raise ConfigError(f"Unable to load the certificates for {hostnames}: {e}") from e

        endpoint = TCP4ServerEndpoint(
            self.reactor, interface.port, interface=interface.address
        )
        d = endpoint.listen(protocol_factory)
        d.addCallback(self.on_bind_interface, interface)
        d.addErrback(self.on_bind_error, interface)
        return d

    def initialize(self) -> None:
        """
        Install the server into the twisted reactor.
        """
        for interface in self.config.interfaces.values():
            self.bind_interface(interface)
        self.reactor.addSystemEventTrigger("before", "shutdown", self.shutdown)

    def track(self, task: Deferred) -> Deferred:
        """
        Keep a reference to a request that is in progress, so that shutdown
        can wait for it to finish.
        """
        self.pending.add(task)

        def on_done(result: typing.Any) -> typing.Any:
            self.pending.discard(task)
            return result

        def on_error(failure: Failure) -> None:
            self.log_message("error: unhandled error in request\n" + failure.getTraceback())

        task.addBoth(on_done)
        task.addErrback(on_error)
        return task

    def shutdown(self) -> Deferred:
        """
        Stop accepting new connections. The reactor keeps running until the
        requests that are already in progress have been answered.
        """
        self.log_message("info: Shutting down")
        stopping = [maybeDeferred(port.stopListening) for port in self.ports]
        self.ports = []
        return DeferredList(stopping + list(self.pending))

    def finalize(self) -> None:
        """
        Run the fini hooks of the handlers after the event loop has ended.
        """
        self.config.finalize(self.log_message)

    def run(self) -> int:
        """
        This is the main server loop, it returns the process exit code.
        """
        self.log_message(ABOUT)
        self.initialize()
        if self.exit_code:
            for port in self.ports:
                port.stopListening()
            return self.exit_code

        self.reactor.run()
        self.finalize()
        return self.exit_code

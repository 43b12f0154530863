"""
Sample configuration file for the lodestar gemini server.

    $ lodestar examples/sample_conf.py

The file is executed as python code when the server starts, and the module
level names below are read as the configuration. Only ``hosts`` is required.
"""
import os

# The address and port to listen on. Hosts without their own address listen
# here, and take the missing parts of their own address from it.
address = "[::]:1965"

# Defaults appended to the mimetype of text/* responses, e.g.
# "text/gemini; lang=en; charset=utf-8". Hosts and handlers can override them.
language = "en"
charset = "utf-8"

# Seconds that a client has to send its request line, None disables it
timeout = 30

# Extra directories to search for handler modules
modules = [os.path.dirname(os.path.abspath(__file__))]


def is_admin(issuer, subject, request):
    """
    Authorization checks are called with the decoded issuer and subject of
    the client certificate, and the parsed request. Return True to let the
    request through.
    """
    return subject.get("CN") == "admin" and issuer.get("O") == "Example"


hosts = {
    "example.com": {
        # Both are required, hosts without them are not served
        "certificate": "/etc/lodestar/example.com.crt",
        "keyfile": "/etc/lodestar/example.com.key",
        # "@" is the hostname, the port comes from the global address
        # "address": "@:1965",
        # ----------------------------------------------------------------
        # Authorization rules. The first rule whose pattern matches the path
        # decides, the following rules are never checked.
        # ----------------------------------------------------------------
        "authorization": [
            {"path": "^/private/", "check": is_admin},
            {"path": "^/members/", "check": lambda issuer, subject, request: True},
        ],
        # ----------------------------------------------------------------
        # Redirects are checked after authorization, temporary first, then
        # permanent, then gone. "$1" through "$9" are replaced with the groups
        # captured by the pattern.
        # ----------------------------------------------------------------
        "redirect": {
            "temporary": [
                ("^/example1/(.*)", "/new-location/$1"),
            ],
            "permanent": [
                ("^/example2/(.*)", "gemini://example.net/$1"),
            ],
            "gone": [
                "^/obsolete",
            ],
        },
        # ----------------------------------------------------------------
        # Handlers are tried in order, the first pattern that matches the
        # path is used. The last entry should match everything.
        # ----------------------------------------------------------------
        "handlers": [
            {
                "path": "^/sample/(.*)",
                "module": "lodestar.handlers.sample",
                "title": "Hello from lodestar",
            },
            {
                "path": "^/count$",
                "module": "counter",
                "count": 3,
            },
            {
                "path": ".*",
                "module": "lodestar.handlers.filesystem",
                "directory": "/var/gemini",
                "index": "index.gmi",
                "no_access": [r"^\.", r"~$"],
            },
        ],
        # ----------------------------------------------------------------
        # CGI settings, executable files served by the filesystem handler
        # are run as CGI programs when this block is present.
        # ----------------------------------------------------------------
        "cgi": {
            "cwd": "/tmp",
            "env": {
                "PATH": "/usr/local/bin:/usr/bin:/bin",
                "LANG": "en_US.UTF-8",
            },
            # "http": True,   # emulate the variables of a web server
            # "apache": True, # Apache style variable names
            # "envtls": True, # describe the client certificate
            "timeout": 30,
            # Every instance whose pattern matches the path is applied, in order
            "instance": {
                "^/private/raw.*": {"cwd": "/var/tmp"},
                "^/private/index.gmi$": {"envtls": True},
                "^/web/.*": {
                    "http": True,
                    "apache": True,
                    "env": {"SAMPLE_CONFIG": "sample.conf"},
                },
            },
        },
    },
    "example.net": {
        "certificate": "/etc/lodestar/example.net.crt",
        "keyfile": "/etc/lodestar/example.net.key",
        "language": "fr",
        "handlers": [
            {
                "path": ".*",
                "module": "lodestar.handlers.filesystem",
                "directory": "/var/gemini-net",
            },
        ],
    },
}

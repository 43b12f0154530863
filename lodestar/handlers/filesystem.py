"""
Serve static files, directory listings and CGI programs from a directory.

Handler options:

    directory   The root directory to serve (required).
    index       File served in place of a directory listing, "index.gmi".
    no_access   Patterns matched against every segment of the path. Matching
                files are neither served nor listed. Hidden files and editor
                backups are excluded by default.
    cgi         Run executable files as CGI programs. Defaults to true when
                the host has a "cgi" block.

Requests are mapped onto the directory with their full path, so an entry with
the pattern "^/docs/" serves "/docs/a.gmi" from "<directory>/docs/a.gmi".
"""
from __future__ import annotations

import mimetypes
import os
import pathlib
import re
import typing
import urllib.parse

from twisted.internet.threads import deferToThread

from ..app import cgi
from ..app.auth import AuthContext
from ..app.base import MESSAGES, Captures, HandlerResult, Request, Status
from ..app.dispatch import HandlerEntry

NO_ACCESS = (r"^\.", r"~$")


def build_mimetypes() -> mimetypes.MimeTypes:
    types = mimetypes.MimeTypes()
    # We need to manually load all of the operating system mimetype files
    # https://bugs.python.org/issue38656
    for fn in mimetypes.knownfiles:
        if os.path.isfile(fn):
            types.read(fn)

    # Gemini has no way to send a content encoding, so compressed files are
    # served with the mimetype of the compression format.
    types.encodings_map = {}
    types.add_type("application/gzip", ".gz")
    types.add_type("application/x-bzip2", ".bz2")

    types.add_type("text/gemini", ".gmi")
    types.add_type("text/gemini", ".gemini")
    return types


def init(entry: HandlerEntry) -> None:
    directory = entry.get("directory")
    if not directory:
        raise ValueError("missing directory option")

    root = pathlib.Path(directory).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{directory!r} is not a directory")

    host_cgi = entry.host.cgi if entry.host is not None else None
    use_cgi = entry.get("cgi")
    if use_cgi is None:
        options = host_cgi
    elif use_cgi:
        options = host_cgi or cgi.CGIOptions()
    else:
        options = None

    entry.state["root"] = root
    entry.state["index"] = entry.get("index", "index.gmi")
    entry.state["no_access"] = [re.compile(p) for p in entry.get("no_access", NO_ACCESS)]
    entry.state["cgi"] = options
    entry.state["mimetypes"] = build_mimetypes()


def is_hidden(entry: HandlerEntry, name: str) -> bool:
    return any(pattern.search(name) for pattern in entry.state["no_access"])


def not_found() -> HandlerResult:
    return Status.NOT_FOUND, MESSAGES[Status.NOT_FOUND], b""


def guess_mimetype(entry: HandlerEntry, filename: str) -> str:
    mimetype, _ = entry.state["mimetypes"].guess_type(filename)
    return mimetype or "application/octet-stream"


async def read_file(entry: HandlerEntry, filename: pathlib.Path) -> HandlerResult:
    """
    Load the file in the twisted thread pool so a large file doesn't stall
    the other connections.
    """
    mimetype = guess_mimetype(entry, filename.name)
    body = await deferToThread(filename.read_bytes)
    return Status.SUCCESS, mimetype, body


def list_directory(entry: HandlerEntry, url_path: str, directory: pathlib.Path) -> str:
    """
    Auto-generate a text/gemini document based on the contents of the file system.
    """
    lines = [f"# Directory: {url_path}", ""]
    if url_path != "/":
        lines.append("=> ../ ..")

    for file in sorted(directory.iterdir()):
        if is_hidden(entry, file.name):
            continue

        encoded_name = urllib.parse.quote(file.name)
        if file.is_dir():
            lines.append(f"=> {encoded_name}/ {file.name}/")
        else:
            lines.append(f"=> {encoded_name} {file.name}")

    return "\n".join(lines) + "\n"


def handler(
    entry: HandlerEntry, auth: AuthContext, request: Request, captures: Captures
) -> typing.Union[HandlerResult, typing.Awaitable[HandlerResult]]:
    """
    Walk the request path down from the root directory.

    The first segment that is a file ends the walk. If it's an executable
    file and CGI is enabled, the rest of the path becomes the PATH_INFO of
    the program (RFC 3875 section 4.1.5).
    """
    root: pathlib.Path = entry.state["root"]
    segments = [segment for segment in request.path.split("/") if segment]

    current = root
    for i, segment in enumerate(segments):
        if is_hidden(entry, segment):
            return not_found()

        current = current / segment
        try:
            if current.is_dir():
                continue
            if not current.is_file() or not os.access(current, os.R_OK):
                return not_found()
            executable = os.access(current, os.X_OK)
        except OSError:
            # Filename too large, etc.
            return not_found()

        rest = segments[i + 1 :]
        options = entry.state["cgi"]
        if executable and options is not None:
            script_name = "/" + "/".join(segments[: i + 1])
            path_info = "/" + "/".join(rest) if rest else ""
            if request.path.endswith("/") and not path_info.endswith("/"):
                path_info += "/"

            port = entry.host.port if entry.host is not None else request.effective_port
            return cgi.execute(
                str(current),
                script_name,
                path_info,
                str(root),
                port,
                request,
                auth,
                options,
            )

        if rest:
            return not_found()

        return read_file(entry, current)

    if not request.path.endswith("/"):
        url_parts = urllib.parse.urlparse(request.url)
        # noinspection PyProtectedMember
        url_parts = url_parts._replace(path=url_parts.path + "/")
        return Status.REDIRECT_PERMANENT, url_parts.geturl(), b""

    if not os.access(current, os.R_OK | os.X_OK):
        return not_found()

    index_file = current / entry.state["index"]
    if index_file.is_file():
        return read_file(entry, index_file)

    return Status.SUCCESS, "text/gemini", list_directory(entry, request.path, current)

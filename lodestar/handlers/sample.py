"""
A minimal handler that describes the request it was called with.

Useful as a starting point for writing new handlers, and for checking that a
path pattern captures what it's supposed to.
"""
from __future__ import annotations

from ..app.auth import AuthContext
from ..app.base import Captures, HandlerResult, Request, Status
from ..app.dispatch import HandlerEntry


def init(entry: HandlerEntry) -> None:
    entry.state["title"] = entry.get("title", "Sample handler")


def handler(
    entry: HandlerEntry, auth: AuthContext, request: Request, captures: Captures
) -> HandlerResult:
    lines = [
        f"# {entry.state['title']}",
        "",
        f"path: {request.path}",
        f"query: {request.query or ''}",
        f"remote: {auth.remote_addr}",
    ]
    for i, capture in enumerate(captures, 1):
        lines.append(f"capture {i}: {capture}")
    if auth.provided:
        lines.append(f"subject: {auth.subject_dn}")

    return Status.SUCCESS, "text/gemini", "\n".join(lines) + "\n"


def fini(entry: HandlerEntry) -> None:
    entry.state.clear()

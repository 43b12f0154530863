from __future__ import annotations

import dataclasses
import re
import typing

from .base import Captures, Response, RoutePattern, Status

SUBSTITUTION_RE = re.compile(r"\$([0-9])")


def substitute(template: str, captures: Captures) -> str:
    """
    Replace "$1" through "$9" in the template with the captured groups.

    References to groups that don't exist are replaced with an empty string.
    """

    def replace(match: typing.Match[str]) -> str:
        index = int(match[1])
        if 0 < index <= len(captures):
            return captures[index - 1]
        return ""

    return SUBSTITUTION_RE.sub(replace, template)


@dataclasses.dataclass(frozen=True)
class RedirectRule:
    pattern: RoutePattern
    template: str


@dataclasses.dataclass(frozen=True)
class RedirectSet:
    """
    The temporary, permanent and gone tables of a virtual host.
    """

    temporary: typing.Tuple[RedirectRule, ...] = ()
    permanent: typing.Tuple[RedirectRule, ...] = ()
    gone: typing.Tuple[RoutePattern, ...] = ()

    def check(self, path: str) -> typing.Optional[Response]:
        """
        Return a redirect or gone response if any of the rules match the path.

        Temporary rules are checked first, then permanent rules, then the gone
        patterns. The first match wins.
        """
        tables = (
            (Status.REDIRECT_TEMPORARY, self.temporary),
            (Status.REDIRECT_PERMANENT, self.permanent),
        )
        for status, rules in tables:
            for rule in rules:
                captures = rule.pattern.match(path)
                if captures is not None:
                    return Response(status, substitute(rule.template, captures))

        for pattern in self.gone:
            if pattern.match(path) is not None:
                return Response.from_status(Status.GONE)

        return None

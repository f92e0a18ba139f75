"""``$VAR`` / ``${VAR}`` expansion against a build's environment."""

from __future__ import annotations

import re
from typing import Mapping

_MACRO = re.compile(r"\$(?:\{([A-Za-z0-9_.]+)\}|([A-Za-z0-9_]+))")


def expand_macros(text: str, env: Mapping[str, str]) -> str:
    """Replace ``$NAME`` and ``${NAME}`` with values from *env*.

    References to unknown variables are left untouched so a typo shows up
    verbatim in the remote path instead of silently collapsing.
    """

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        value = env.get(name)
        return match.group(0) if value is None else value

    return _MACRO.sub(_sub, text)

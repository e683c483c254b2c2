"""``${VAR}`` interpolation against an environment set."""

from __future__ import annotations

import re
from typing import Iterable, Mapping

from ..errors import ConfigurationError

_PATTERN = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::?-([^}]*))?\}")


def interpolate(value: str, environment: Mapping[str, str], *, field: str = "value") -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}``; ``$$`` escapes a literal dollar."""

    def _replace(match: re.Match) -> str:
        if match.group(0) == "$$":
            return "$"
        name, default = match.group(1), match.group(2)
        resolved = environment.get(name)
        if resolved is None or (resolved == "" and ":-" in match.group(0)):
            if default is not None:
                return default
            raise ConfigurationError(f"{field} references undefined variable {name!r}", field=field)
        return resolved

    return _PATTERN.sub(_replace, value)


def interpolate_all(values: Iterable[str], environment: Mapping[str, str], *, field: str = "value") -> tuple[str, ...]:
    return tuple(interpolate(item, environment, field=field) for item in values)

"""Reader for the dotenv files named by ``env_file`` and ``.devherd.env``."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict

from ..errors import ConfigurationError

_ASSIGNMENT = re.compile(r"^(?:export\s+)?(?P<key>[^=\s]+)\s*=\s*(?P<value>.*)$")
_DOUBLE_QUOTED_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


class DotenvLoader:
    """Parses compose-style env files: ``KEY=value`` lines, ``#`` comments, optional ``export``."""

    @staticmethod
    def load_from_file(path: Path, *, required: bool = False) -> Dict[str, str]:
        """
        Read *path* into a mapping.

        A missing file yields ``{}`` unless *required*.

        Raises:
            ConfigurationError: The file is missing (when required), unreadable, or has a malformed line
        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            if required:
                raise ConfigurationError(f"Environment file {path} does not exist", field="env_file") from exc
            return {}
        except OSError as exc:
            raise ConfigurationError(f"Cannot read environment file {path}: {exc}", field="env_file") from exc
        return DotenvLoader.parse(text, source=str(path))

    @staticmethod
    def parse(text: str, *, source: str = "<env>") -> Dict[str, str]:
        """Parse dotenv text; later assignments win."""
        values: Dict[str, str] = {}
        for lineno, line in enumerate(text.splitlines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            match = _ASSIGNMENT.match(stripped)
            if match is None:
                raise ConfigurationError(f"{source}:{lineno}: expected KEY=VALUE, got {stripped!r}", field="env_file")
            values[match.group("key")] = DotenvLoader._value(match.group("value"))
        return values

    @staticmethod
    def _value(raw: str) -> str:
        if len(raw) >= 2 and raw[0] == raw[-1] == "'":
            return raw[1:-1]
        if len(raw) >= 2 and raw[0] == raw[-1] == '"':
            return re.sub(r"\\(.)", lambda m: _DOUBLE_QUOTED_ESCAPES.get(m.group(1), m.group(0)), raw[1:-1])
        # Unquoted values may carry a trailing comment
        return raw.split(" #", 1)[0].rstrip()

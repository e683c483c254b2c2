"""
Environment-backed orchestrator settings.

Every ``DEVHERD_*`` setting is looked up in the process environment first and
then in the first ``.devherd.env`` style defaults file that defines it
(``$DEVHERD_ENV_FILE``, ``./.devherd.env``, ``~/.devherd.env``). Errors name
where the offending value came from.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, TypeVar

from .errors import ConfigurationError

T = TypeVar("T")

ENV_FILE_VARIABLE = "DEVHERD_ENV_FILE"

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "f", "no", "n", "off"}

_DEFAULT_FILES = (Path(".devherd.env"), Path.home() / ".devherd.env")


class _Setting(NamedTuple):
    value: str
    origin: str


_defaults_cache: Optional[dict[str, _Setting]] = None


def _defaults_files() -> List[Path]:
    files = list(_DEFAULT_FILES)
    explicit = os.getenv(ENV_FILE_VARIABLE)
    if explicit:
        files.insert(0, Path(explicit).expanduser())
    return files


def _defaults() -> dict[str, _Setting]:
    from .runtime_helpers import DotenvLoader

    global _defaults_cache
    if _defaults_cache is None:
        explicit = os.getenv(ENV_FILE_VARIABLE)
        loaded: dict[str, _Setting] = {}
        for path in _defaults_files():
            required = explicit is not None and path == Path(explicit).expanduser()
            for key, value in DotenvLoader.load_from_file(path, required=required).items():
                loaded.setdefault(key, _Setting(value, str(path)))
        _defaults_cache = loaded
    return _defaults_cache


def reset_default_values() -> None:
    """Forget the cached defaults files; the next lookup re-reads them."""
    global _defaults_cache
    _defaults_cache = None


def _lookup(name: str, *, strip: bool = True, allow_blank: bool = False) -> Optional[_Setting]:
    for setting in (_from_environment(name), _defaults().get(name)):
        if setting is None:
            continue
        value = setting.value.strip() if strip else setting.value
        if value or allow_blank:
            return _Setting(value, setting.origin)
    return None


def _from_environment(name: str) -> Optional[_Setting]:
    value = os.getenv(name)
    return _Setting(value, "environment") if value is not None else None


def _missing(name: str) -> ConfigurationError:
    return ConfigurationError(f"Required setting {name!r} is not set", field=name)


def _invalid(name: str, setting: _Setting, expected: str) -> ConfigurationError:
    return ConfigurationError(
        f"Setting {name!r} from {setting.origin} must be {expected} (got {setting.value!r})", field=name
    )


def _typed(name: str, or_value: Optional[T], required: bool, parse: Callable[[_Setting], T]) -> Optional[T]:
    setting = _lookup(name)
    if setting is None:
        if required and or_value is None:
            raise _missing(name)
        return or_value
    return parse(setting)


def env_str(
    name: str,
    or_value: str | None = None,
    *,
    required: bool = False,
    strip: bool = True,
    allow_blank: bool = False,
) -> str | None:
    """Fetch a setting as a string."""
    setting = _lookup(name, strip=strip, allow_blank=allow_blank)
    if setting is None:
        if required:
            raise _missing(name)
        return or_value
    return setting.value


def env_int(name: str, or_value: int | None = None, *, required: bool = False) -> int | None:
    def parse(setting: _Setting) -> int:
        try:
            return int(setting.value)
        except ValueError as exc:
            raise _invalid(name, setting, "an integer") from exc

    return _typed(name, or_value, required, parse)


def env_float(name: str, or_value: float | None = None, *, required: bool = False) -> float | None:
    def parse(setting: _Setting) -> float:
        try:
            return float(setting.value)
        except ValueError as exc:
            raise _invalid(name, setting, "a number") from exc

    return _typed(name, or_value, required, parse)


def env_bool(name: str, or_value: bool | None = None, *, required: bool = False) -> bool | None:
    def parse(setting: _Setting) -> bool:
        lowered = setting.value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise _invalid(name, setting, f"one of {sorted(_TRUE_VALUES | _FALSE_VALUES)}")

    return _typed(name, or_value, required, parse)


def env_seconds(name: str, or_value: float | None = None, *, required: bool = False) -> float | None:
    """Durations in seconds; negative values are rejected."""
    value = env_float(name, or_value=or_value, required=required)
    if value is not None and value < 0:
        raise ConfigurationError(f"Setting {name!r} must be non-negative (got {value:g})", field=name)
    return value


def env_path(name: str, or_value: Path | str | None = None) -> Path | None:
    raw = env_str(name)
    if raw is None:
        return Path(or_value).expanduser() if or_value is not None else None
    return Path(raw).expanduser()

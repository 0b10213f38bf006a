from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Optional

import yaml

from canrepl.canrepl_errors import ConfigError


_EXTENSIONS = {
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
}


def detect_format(path: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json', 'yaml' or 'toml'. Uses the file extension first, then
    sniffs the data: a leading brace or bracket means JSON, a ``key = value``
    line means TOML, anything else is read as YAML.
    """
    if path:
        fmt = _EXTENSIONS.get(Path(path).suffix.lower())
        if fmt:
            return fmt
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        first = next((ln.strip() for ln in s.splitlines() if ln.strip() and not ln.strip().startswith('#')), "")
        if first.startswith('[') or ('=' in first and ':' not in first.split('=', 1)[0]):
            return 'toml'
        return 'yaml'
    return None


def deserialize(text: str, *, fmt: Optional[str] = None) -> Any:
    f = fmt or detect_format(data_hint=text)
    try:
        if f == 'json':
            return json.loads(text)
        if f == 'yaml':
            return yaml.safe_load(text)
        if f == 'toml':
            return tomllib.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"invalid {f} document: {e}") from e
    raise ConfigError(f"unsupported format: {f!r}")


def load_source(source: str, base_dir: Optional[str] = None) -> Any:
    """
    Reads a config source: a path to a .toml/.yaml/.yml/.json file (relative to
    base_dir), or an inline document.
    """
    suffix = Path(source).suffix.lower()
    if suffix in _EXTENSIONS and '\n' not in source:
        path = Path(base_dir or ".") / source
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot read config file {path}: {e}") from e
        return deserialize(text, fmt=_EXTENSIONS[suffix])
    return deserialize(source)


__all__ = [
    "deserialize",
    "detect_format",
    "load_source",
]

# SPDX-License-Identifier: MIT
"""Import map parsing and module specifier resolution.

Follows the WHATWG import maps algorithm closely enough for resolving the
specifiers found in Deno projects: ``imports`` and ``scopes`` are normalized
against the map's own url, keys are sorted so that the most specific rule is
tried first, and trailing-slash keys act as prefix rules.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, urljoin, urlsplit, uses_relative
from urllib.request import url2pathname

from .errors import ConfigError, TscHelperError

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")
_SPECIAL_SCHEMES = frozenset({"ftp", "file", "http", "https", "ws", "wss"})
_PATH_SAFE_CHARS = "/:@!$&'()*+,;=~"


class ImportMapResolutionError(TscHelperError):
    """Raised when a specifier cannot be resolved."""

    pass


SpecifierMap = dict[str, Optional[str]]


@dataclass
class ImportMap:
    """A parsed import map.

    Attributes:
        imports: Normalized specifier -> address map, most specific key first.
            An address of None means the key is blocked.
        scopes: Scope url -> specifier map, most specific scope first
        base_url: Url the map was parsed against
    """

    imports: SpecifierMap = field(default_factory=dict)
    scopes: dict[str, SpecifierMap] = field(default_factory=dict)
    base_url: str = ""

    def merged(self, other: "ImportMap") -> "ImportMap":
        """Combine two maps; rules from ``other`` win on identical keys."""
        imports = dict(self.imports)
        imports.update(other.imports)
        scopes = {scope: dict(entries) for scope, entries in self.scopes.items()}
        for scope, entries in other.scopes.items():
            scopes.setdefault(scope, {}).update(entries)
        return ImportMap(
            imports=_sort_specifier_map(imports),
            scopes={
                scope: _sort_specifier_map(scopes[scope])
                for scope in sorted(scopes, reverse=True)
            },
            base_url=self.base_url or other.base_url,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON form of the normalized map. Addresses are absolute urls."""
        return {
            "imports": {k: v for k, v in self.imports.items() if v is not None},
            "scopes": {
                scope: {k: v for k, v in entries.items() if v is not None}
                for scope, entries in self.scopes.items()
            },
        }


def quote_path(path: str) -> str:
    """Percent-encode a posix path the way url parsers encode url paths."""
    return quote(path, safe=_PATH_SAFE_CHARS)


def path_to_file_url(path: str | Path) -> str:
    """Convert a local path to an absolute ``file:`` url."""
    return "file://" + quote_path(Path(os.path.abspath(path)).as_posix())


def file_url_to_path(url: str) -> Path:
    """Convert a ``file:`` url back to a local path."""
    parts = urlsplit(url)
    if parts.scheme != "file":
        raise ValueError(f"Not a file url: {url}")
    return Path(url2pathname(parts.path))


def is_inside(path: str | Path, root: str | Path) -> bool:
    """Check whether ``path`` equals ``root`` or lies beneath it."""
    path_str = os.path.abspath(path)
    root_str = os.path.abspath(root)
    try:
        return os.path.commonpath([path_str, root_str]) == root_str
    except ValueError:
        return False


def _normalize_url(url: str) -> str:
    scheme = urlsplit(url).scheme.lower()
    if scheme in uses_relative and scheme != "":
        # Joining a url with itself removes dot segments.
        return urljoin(url, url)
    return url


def parse_url_like_specifier(specifier: str, base_url: str) -> Optional[str]:
    """Parse a specifier that is a url or a path-like relative reference.

    Returns None for bare specifiers such as ``"lodash"``.
    """
    if specifier.startswith(("/", "./", "../")):
        if not base_url:
            return None
        return _normalize_url(urljoin(base_url, specifier))
    if _SCHEME_RE.match(specifier):
        return _normalize_url(specifier)
    return None


def _sort_specifier_map(entries: SpecifierMap) -> SpecifierMap:
    return {key: entries[key] for key in sorted(entries, reverse=True)}


def _normalize_specifier_map(raw: Any, base_url: str) -> SpecifierMap:
    if not isinstance(raw, dict):
        raise ConfigError("Import map 'imports' and scope values must be objects")

    normalized: SpecifierMap = {}
    for key, value in raw.items():
        if key == "":
            logger.warning("Ignoring empty specifier key in import map")
            continue
        normalized_key = parse_url_like_specifier(key, base_url) or key
        if not isinstance(value, str):
            logger.warning("Ignoring import map entry %r: address must be a string", key)
            normalized[normalized_key] = None
            continue
        address = parse_url_like_specifier(value, base_url)
        if address is None:
            logger.warning("Ignoring import map entry %r: address %r is not a url", key, value)
            normalized[normalized_key] = None
            continue
        if key.endswith("/") and not address.endswith("/"):
            logger.warning(
                "Ignoring import map entry %r: address %r must end with '/'", key, value
            )
            normalized[normalized_key] = None
            continue
        normalized[normalized_key] = address
    return _sort_specifier_map(normalized)


def parse_import_map(data: Any, base_url: str) -> ImportMap:
    """Parse an import map document.

    Args:
        data: The decoded JSON document
        base_url: Url of the import map itself

    Raises:
        ConfigError: If the document is structurally invalid
    """
    if not isinstance(data, dict):
        raise ConfigError("An import map must be a JSON object")

    imports = _normalize_specifier_map(data.get("imports", {}), base_url)

    raw_scopes = data.get("scopes", {})
    if not isinstance(raw_scopes, dict):
        raise ConfigError("Import map 'scopes' must be an object")
    scopes: dict[str, SpecifierMap] = {}
    for scope_prefix, scope_map in raw_scopes.items():
        scope_url = parse_url_like_specifier(scope_prefix, base_url)
        if scope_url is None:
            scope_url = _normalize_url(urljoin(base_url, scope_prefix))
        scopes[scope_url] = _normalize_specifier_map(scope_map, base_url)

    return ImportMap(
        imports=imports,
        scopes={scope: scopes[scope] for scope in sorted(scopes, reverse=True)},
        base_url=base_url,
    )


def create_empty_import_map() -> ImportMap:
    """An import map without any rules."""
    return ImportMap()


def _resolve_imports_match(
    normalized: str,
    as_url: Optional[str],
    specifier_map: SpecifierMap,
) -> Optional[str]:
    for key, address in specifier_map.items():
        if key == normalized:
            if address is None:
                raise ImportMapResolutionError(f'Import of "{normalized}" is blocked by the import map')
            return address
        if not key.endswith("/") or not normalized.startswith(key):
            continue
        if as_url is not None and urlsplit(as_url).scheme not in _SPECIAL_SCHEMES:
            continue
        if address is None:
            raise ImportMapResolutionError(f'Import of "{normalized}" is blocked by the import map')
        after_prefix = normalized[len(key) :]
        resolved = _normalize_url(urljoin(address, after_prefix))
        if not resolved.startswith(address):
            raise ImportMapResolutionError(
                f'Import of "{normalized}" backtracks above its prefix "{key}"'
            )
        return resolved
    return None


def resolve_module_specifier(import_map: ImportMap, base_url: str, specifier: str) -> str:
    """Resolve ``specifier`` imported from ``base_url`` to an absolute url.

    Raises:
        ImportMapResolutionError: If the specifier is bare and not mapped
    """
    as_url = parse_url_like_specifier(specifier, base_url)
    normalized = as_url or specifier

    for scope_prefix, scope_imports in import_map.scopes.items():
        if scope_prefix == base_url or (
            scope_prefix.endswith("/") and base_url.startswith(scope_prefix)
        ):
            resolved = _resolve_imports_match(normalized, as_url, scope_imports)
            if resolved is not None:
                return resolved

    resolved = _resolve_imports_match(normalized, as_url, import_map.imports)
    if resolved is not None:
        return resolved

    if as_url is not None:
        return as_url

    raise ImportMapResolutionError(
        f'Relative import path "{specifier}" not prefixed with / or ./ or ../ '
        f"and not found in the import map (imported from {base_url})"
    )


def load_import_map(import_map: Optional[str], cwd: Path) -> tuple[ImportMap, Optional[Path]]:
    """Load the user's import map.

    Args:
        import_map: Path to the import map, relative to ``cwd``, or None
        cwd: Directory the run was started from

    Returns:
        Tuple of (parsed map, absolute path of the map file or None)

    Raises:
        ConfigError: If the file is missing or not valid JSON
    """
    if not import_map:
        return create_empty_import_map(), None

    import_map_path = (cwd / import_map).resolve()
    try:
        text = import_map_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Import map not found: {import_map_path}") from None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"The import map at {import_map_path} is not valid JSON: {e}") from e

    return parse_import_map(data, path_to_file_url(import_map_path)), import_map_path

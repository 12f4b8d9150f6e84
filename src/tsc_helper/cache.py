# SPDX-License-Identifier: MIT
"""Persistent incremental state shared between runs.

The cache file is private to tsc-helper and its format may change between
versions. External tools that need a cache key should use the cache hash
file instead (see ``tsconfig.build_cache_hash_content``).

Each category of work (runtime declarations, extra type roots, exact type
modules, vendoring) is cleared in the cache file before it starts and only
recorded again once it has finished, so an interrupted run never leaves a
half-finished category marked as done.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Iterable, Optional

from .errors import TscHelperError

CACHE_FILENAME = "cacheFile.json"

_JSON_KEYS = {
    "vendored_imports": "vendoredImports",
    "tool_version_tag": "denoTypesVersion",
    "fetched_type_roots": "fetchedTypeRoots",
    "fetched_exact_type_modules": "fetchedExactTypeModules",
    "config_fingerprint": "configFingerprint",
    "ambient_module_specifiers": "ambientModuleSpecifiers",
}


class CacheError(TscHelperError):
    """Raised when an existing cache file cannot be read."""

    pass


@dataclass
class CacheState:
    """Everything remembered from previous runs.

    Attributes:
        vendored_imports: Resolved urls vendored by the last complete run, or
            None when vendoring never completed (or was interrupted)
        tool_version_tag: Version of the runtime declarations on disk
        fetched_type_roots: Folder name -> url of fetched extra type roots
        fetched_exact_type_modules: Specifier -> url of fetched exact types
        config_fingerprint: Fingerprint of the options of the last complete run
        ambient_module_specifiers: Sorted specifiers given an ambient module
            declaration by the last complete run
    """

    vendored_imports: Optional[list[str]] = None
    tool_version_tag: str = ""
    fetched_type_roots: dict[str, str] = field(default_factory=dict)
    fetched_exact_type_modules: dict[str, str] = field(default_factory=dict)
    config_fingerprint: str = ""
    ambient_module_specifiers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {_JSON_KEYS[f.name]: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheState":
        state = cls()
        for f in fields(cls):
            key = _JSON_KEYS[f.name]
            if key in data:
                setattr(state, f.name, data[key])
        return state


class CacheFile:
    """The on-disk cache record, rewritten completely on every update."""

    def __init__(self, path: Path, state: Optional[CacheState] = None, exists: bool = False) -> None:
        self.path = path
        self.state = state or CacheState()
        self.exists = exists

    @classmethod
    def load(cls, path: Path) -> "CacheFile":
        """Load the cache file, or start with an empty state if there is none.

        Raises:
            CacheError: If the file exists but is not a valid cache record
        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls(path)

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CacheError(
                f"The cache file at {path} is corrupt and could not be parsed. "
                "Delete it to start with a fresh cache."
            ) from e
        if not isinstance(data, dict):
            raise CacheError(f"The cache file at {path} does not contain a JSON object.")
        return cls(path, CacheState.from_dict(data), exists=True)

    @property
    def previously_vendored(self) -> set[str]:
        return set(self.state.vendored_imports or [])

    def update(self, **changes: Any) -> None:
        """Apply ``changes`` and durably write the complete record.

        The record is written to a temporary file and moved into place, so a
        crash leaves either the old or the new record on disk.
        """
        for name, value in changes.items():
            if name not in _JSON_KEYS:
                raise AttributeError(f"Unknown cache field: {name}")
            setattr(self.state, name, value)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".cacheFile", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.state.to_dict(), f, indent="\t")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self.exists = True

    def is_up_to_date(
        self,
        resolved_specifiers: set[str],
        fingerprint: str,
        ambient_specifiers: Iterable[str] = (),
    ) -> bool:
        """Whether the last complete run already covers these imports and options.

        Remote imports only need to be a subset of what was vendored, but the
        ambient module declarations on disk must match exactly.
        """
        if self.state.vendored_imports is None:
            return False
        if self.state.config_fingerprint != fingerprint:
            return False
        if sorted(set(ambient_specifiers)) != self.state.ambient_module_specifiers:
            return False
        return resolved_specifiers <= self.previously_vendored

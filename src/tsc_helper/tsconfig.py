# SPDX-License-Identifier: MIT
"""Files written at the end of a run: tsconfig, ambient modules and the
CI-facing cache hash and pre-collected imports files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .collector import CollectedImports
from .config import GenerateTypesOptions
from .errors import ConfigError

logger = logging.getLogger(__name__)

TSCONFIG_FILENAME = "tsconfig.json"
AMBIENT_MODULES_FOLDER = "tsc-helper-ambient-modules"


class ConfigPathTable:
    """Ordered specifier -> local paths mapping for ``compilerOptions.paths``."""

    def __init__(self) -> None:
        self._paths: dict[str, list[str]] = {}

    def add(self, specifier: str, path: str | Path) -> None:
        """Map ``specifier`` to ``path``, replacing an earlier entry."""
        self._paths[specifier] = [str(path)]

    def merge_existing(self, tsconfig_path: Path) -> None:
        """Keep ``paths`` entries of an existing tsconfig that are not set here.

        Raises:
            ConfigError: If the existing file is not valid JSON
        """
        try:
            text = tsconfig_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        try:
            existing = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(
                f"The existing tsconfig at {tsconfig_path} is corrupt and could not be parsed: {e}"
            ) from e

        compiler_options = existing.get("compilerOptions") if isinstance(existing, dict) else None
        existing_paths = (compiler_options or {}).get("paths") or {}
        if not isinstance(existing_paths, dict):
            return
        merged = {k: list(v) for k, v in existing_paths.items() if isinstance(v, list)}
        merged.update(self._paths)
        self._paths = merged

    def discard(self, specifier: str) -> None:
        self._paths.pop(specifier, None)

    def get(self, specifier: str) -> Optional[list[str]]:
        return self._paths.get(specifier)

    def __contains__(self, specifier: object) -> bool:
        return specifier in self._paths

    def __iter__(self) -> Iterator[str]:
        return iter(self._paths)

    def __len__(self) -> int:
        return len(self._paths)

    def to_dict(self) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self._paths.items()}


def write_tsconfig(tsconfig_path: Path, type_roots: list[str], paths: ConfigPathTable) -> None:
    """Write the tsconfig that the user's own tsconfig can extend."""
    content = {
        "compilerOptions": {
            "typeRoots": type_roots,
            "paths": paths.to_dict(),
        }
    }
    tsconfig_path.parent.mkdir(parents=True, exist_ok=True)
    tsconfig_path.write_text(json.dumps(content, indent=2), encoding="utf-8")


def ambient_modules_path(type_roots_dir: Path) -> Path:
    return type_roots_dir / AMBIENT_MODULES_FOLDER / "index.d.ts"


def write_ambient_modules(path: Path, specifiers: Iterable[str]) -> None:
    """Declare every specifier as a module without type information."""
    content = "".join(f'declare module "{s}";\n' for s in dict.fromkeys(specifiers))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def build_cache_hash_content(options: GenerateTypesOptions, collected: CollectedImports) -> str:
    """Deterministic text for deriving an external cache key.

    Options are echoed with sorted keys and both specifier lists are
    deduplicated and sorted, so ordering never changes the result.
    """
    lines = ["--options--", json.dumps(options.to_echo_dict(), sort_keys=True)]
    lines.append("--resolved specifiers--")
    lines.extend(sorted(collected.resolved_specifiers()))
    lines.append("--ambient module specifiers--")
    lines.extend(sorted(set(collected.needs_ambient_module_import_specifiers)))
    return "\n".join(lines) + "\n"


def write_pre_collected_imports(path: Path, collected: CollectedImports) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(collected.to_dict(), indent="\t"), encoding="utf-8")


def read_pre_collected_imports(path: Path) -> Optional[CollectedImports]:
    """Read collected imports written by a previous ``cache-hash`` run.

    Returns:
        The collected imports, or None when the file does not exist

    Raises:
        ConfigError: If the file exists but cannot be parsed
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("No pre-collected imports file was found at %s", path)
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"The file at {path} appears to be corrupt and couldn't be parsed."
        ) from e
    return CollectedImports.from_dict(data)

# SPDX-License-Identifier: MIT
"""Collect import specifiers from the files a user wants to type check.

Files are found by expanding the include list, pruning excluded paths while
walking (excluded directories are never descended into), and parsing every
script file. Each static specifier becomes an ImportRecord once it has been
resolved against the user's import map.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from .ast_parser import parse_file_path_ast, static_import_specifiers
from .errors import ConfigError, TscHelperError
from .import_map import (
    ImportMap,
    ImportMapResolutionError,
    path_to_file_url,
    resolve_module_specifier,
)

logger = logging.getLogger(__name__)

USER_FILE_EXTENSIONS = ("js", "mjs", "cjs", "jsx", "ts", "mts", "cts", "tsx", "d.ts")


class ImportCollectionError(TscHelperError):
    """Raised when the include list points at something that does not exist."""

    pass


@dataclass(frozen=True)
class ImportRecord:
    """A single import statement that resolves to a remote module.

    Attributes:
        importer_file_path: Absolute path of the file containing the import
        import_specifier: The specifier exactly as written
        resolved_specifier: Absolute url after import map resolution
    """

    importer_file_path: Path
    import_specifier: str
    resolved_specifier: str

    def to_dict(self) -> dict[str, str]:
        return {
            "importerFilePath": str(self.importer_file_path),
            "importSpecifier": self.import_specifier,
            "resolvedSpecifier": self.resolved_specifier,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportRecord":
        return cls(
            importer_file_path=Path(data["importerFilePath"]),
            import_specifier=data["importSpecifier"],
            resolved_specifier=data["resolvedSpecifier"],
        )


@dataclass
class CollectedImports:
    """Result of the collection phase.

    Attributes:
        remote_imports: Imports that need vendoring, one per import statement
        needs_ambient_module_import_specifiers: Excluded specifiers that get an
            ambient module declaration instead of real types
    """

    remote_imports: list[ImportRecord] = field(default_factory=list)
    needs_ambient_module_import_specifiers: list[str] = field(default_factory=list)

    def resolved_specifiers(self) -> set[str]:
        """All distinct resolved urls."""
        return {record.resolved_specifier for record in self.remote_imports}

    def group_by_resolved_specifier(self) -> dict[str, list[ImportRecord]]:
        """Group import records by resolved url, keeping first-seen order."""
        groups: dict[str, list[ImportRecord]] = {}
        for record in self.remote_imports:
            groups.setdefault(record.resolved_specifier, []).append(record)
        return groups

    def to_dict(self) -> dict[str, Any]:
        return {
            "remoteImports": [record.to_dict() for record in self.remote_imports],
            "needsAmbientModuleImportSpecifiers": list(self.needs_ambient_module_import_specifiers),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CollectedImports":
        """Rebuild collected imports from their JSON form.

        Raises:
            ConfigError: If the data does not have the expected shape
        """
        try:
            return cls(
                remote_imports=[ImportRecord.from_dict(r) for r in data["remoteImports"]],
                needs_ambient_module_import_specifiers=list(
                    data["needsAmbientModuleImportSpecifiers"]
                ),
            )
        except (KeyError, TypeError) as e:
            raise ConfigError(f"Collected imports data is malformed: {e}") from e


ReadDirFilter = Callable[[os.DirEntry], bool]


def read_dir_recursive(dir_path: Path, entry_filter: Optional[ReadDirFilter] = None) -> Iterator[Path]:
    """Yield every file below ``dir_path``.

    When ``entry_filter`` returns False for a directory, nothing below it is
    visited.
    """
    with os.scandir(dir_path) as entries:
        sorted_entries = sorted(entries, key=lambda e: e.name)
    for entry in sorted_entries:
        if entry_filter is not None and not entry_filter(entry):
            continue
        if entry.is_dir(follow_symlinks=True):
            yield from read_dir_recursive(Path(entry.path), entry_filter)
        else:
            yield Path(entry.path).resolve()


def _has_extension(file_path: Path, extensions: Iterable[str]) -> bool:
    name = file_path.name
    return any(name.endswith("." + ext) for ext in extensions)


def get_include_exclude_files(
    base_dir: Path,
    include: list[str],
    exclude: list[str],
    extensions: Iterable[str] = USER_FILE_EXTENSIONS,
) -> list[Path]:
    """Expand include paths into a concrete list of files.

    Args:
        base_dir: Directory that relative paths are resolved against
        include: Files or directories to include
        exclude: Files or directories to exclude, including everything below them
        extensions: Extensions (without leading dot) of files to keep

    Returns:
        Absolute file paths, without duplicates

    Raises:
        ImportCollectionError: If an include path does not exist
    """
    extensions = tuple(extensions)
    excluded = {str((base_dir / p).resolve()) for p in exclude}
    # Plain names such as "node_modules" prune matching directories at any depth.
    excluded_names = {p for p in exclude if p not in (".", "..") and not any(s in p for s in "/\\")}

    def is_included(entry: os.DirEntry) -> bool:
        if entry.name in excluded_names:
            return False
        return os.path.abspath(entry.path) not in excluded

    files: dict[Path, None] = {}
    for include_path in include:
        full_path = (base_dir / include_path).resolve()
        if not full_path.exists():
            raise ImportCollectionError(f"Included path does not exist: {full_path}")
        if str(full_path) in excluded:
            continue
        if full_path.is_dir():
            for file_path in read_dir_recursive(full_path, is_included):
                if _has_extension(file_path, extensions):
                    files[file_path] = None
        elif _has_extension(full_path, extensions):
            files[full_path] = None
    return list(files)


async def collect_imports(
    base_dir: Path,
    include: list[str],
    exclude: list[str],
    exclude_urls: list[str],
    user_import_map: ImportMap,
) -> CollectedImports:
    """Collect and classify the imports of all included files.

    Args:
        base_dir: Directory relative include/exclude paths are resolved against
        include: Paths to parse imports from
        exclude: Paths that are never parsed
        exclude_urls: Specifiers or resolved urls that should not be vendored
        user_import_map: The user's import map

    Returns:
        CollectedImports with remote imports and ambient module specifiers
    """
    user_files = get_include_exclude_files(base_dir, include, exclude)
    exclude_set = set(exclude_urls)

    all_imports: list[tuple[Path, str]] = []
    for user_file in user_files:
        source_file = await parse_file_path_ast(user_file)
        if source_file is None:
            logger.warning("Skipping %s: the file could not be parsed", user_file)
            continue
        for specifier in static_import_specifiers(source_file):
            all_imports.append((user_file, specifier))

    needs_ambient: dict[str, None] = {}
    for _, specifier in all_imports:
        if specifier in exclude_set:
            needs_ambient[specifier] = None

    remote_imports: list[ImportRecord] = []
    for importer, specifier in all_imports:
        if specifier in exclude_set:
            continue

        base_url = path_to_file_url(importer)
        try:
            resolved = resolve_module_specifier(user_import_map, base_url, specifier)
        except ImportMapResolutionError as e:
            logger.warning("Skipping import in %s: %s", importer, e)
            continue

        if resolved in exclude_set:
            continue
        if resolved.startswith("file:"):
            continue

        remote_imports.append(
            ImportRecord(
                importer_file_path=importer,
                import_specifier=specifier,
                resolved_specifier=resolved,
            )
        )

    return CollectedImports(
        remote_imports=remote_imports,
        needs_ambient_module_import_specifiers=list(needs_ambient),
    )

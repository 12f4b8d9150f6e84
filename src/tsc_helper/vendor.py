# SPDX-License-Identifier: MIT
"""Vendoring of every distinct remote import.

Each resolved url is materialized once per run, in one of two ways:

- Versioned package specifiers (``npm:``/``pkg:``) are looked up in the
  package registry and the published tarball is unpacked below
  ``<out>/packages``. Only the declared types entry is registered as the
  target of the import.
- Everything else is fetched from source, together with its static
  sub-imports, into ``<out>/vendor``. Sub-resources that cannot be fetched
  produce a warning instead of aborting the run.

Vendoring calls share the vendor directory and its ``import_map.json``, so
they run one after the other. The import map produced by each call is parsed
right after the call and kept, normalized, under ``<out>/importMaps`` so
that later runs can skip urls that were already vendored.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import httpx

from .collector import ImportRecord
from .errors import TscHelperError
from .fetcher import (
    IMPORT_MAP_FILENAME,
    FetchFailure,
    ModuleFetchError,
    VendoredFile,
    vendor_modules,
)
from .import_map import (
    ImportMap,
    ImportMapResolutionError,
    create_empty_import_map,
    file_url_to_path,
    is_inside,
    parse_import_map,
    path_to_file_url,
    resolve_module_specifier,
)
from .registry import (
    RegistryError,
    fetch_package,
    is_registry_specifier,
    normalize_package_path,
    parse_registry_specifier,
)

logger = logging.getLogger(__name__)

VENDOR_DIRNAME = "vendor"
PACKAGES_DIRNAME = "packages"
IMPORT_MAPS_DIRNAME = "importMaps"
PLACEHOLDER_DIRNAME = "placeholder"
PLACEHOLDER_MODULE_CONTENT = "export {};\n"


def _importer_files(records: Iterable[ImportRecord]) -> list[str]:
    return list(dict.fromkeys(str(r.importer_file_path) for r in records))


def exclusion_hint(resolved_specifier: str, records: list[ImportRecord]) -> str:
    """Suggest what to add to ``excludeUrls`` to skip an import."""
    exclude_string = resolved_specifier
    import_specifiers = {r.import_specifier for r in records}
    if len(import_specifiers) == 1:
        (import_specifier,) = import_specifiers
        if import_specifier != resolved_specifier:
            exclude_string = f'{import_specifier}" or "{resolved_specifier}'
    return f"Consider adding \"{exclude_string}\" to 'excludeUrls' to skip this import."


def _describe_importers(resolved_specifier: str, records: list[ImportRecord]) -> str:
    lines = "\n".join(f"  {f}" for f in _importer_files(records))
    return f"{resolved_specifier} was imported in the following files:\n{lines}"


class VendorError(TscHelperError):
    """Raised when a top-level import cannot be vendored from source."""

    def __init__(self, resolved_specifier: str, records: list[ImportRecord], error: str) -> None:
        self.resolved_specifier = resolved_specifier
        self.importer_files = _importer_files(records)
        message = (
            f"Failed to vendor files for {resolved_specifier}: {error}\n\n"
            f"{_describe_importers(resolved_specifier, records)}\n\n"
            f"{exclusion_hint(resolved_specifier, records)}"
        )
        super().__init__(message)


class RegistryFetchError(TscHelperError):
    """Raised when a versioned package import cannot be fetched from the registry."""

    def __init__(self, resolved_specifier: str, records: list[ImportRecord], error: str) -> None:
        self.resolved_specifier = resolved_specifier
        self.importer_files = _importer_files(records)
        message = (
            f"Failed to fetch package {resolved_specifier} from the registry: {error}\n\n"
            f"{_describe_importers(resolved_specifier, records)}\n\n"
            f"{exclusion_hint(resolved_specifier, records)}"
        )
        super().__init__(message)


@dataclass
class VendorOutcome:
    """Result of vendoring one resolved url.

    Attributes:
        files: Modules that were written
        import_map_path: The import map written by this call
        failures: Sub-resources that could not be fetched
    """

    files: list[VendoredFile] = field(default_factory=list)
    import_map_path: Optional[Path] = None
    failures: list[FetchFailure] = field(default_factory=list)


class VendorTable:
    """Source url -> local path of every module available in the output directory.

    Filled from the files vendored in this run and from the ``imports`` of
    every per-fetch import map, so urls reused from a previous run are
    present too.
    """

    def __init__(self) -> None:
        self._paths: dict[str, Path] = {}

    def add(self, files: Iterable[VendoredFile]) -> None:
        for vendored in files:
            self._paths[vendored.source_url] = vendored.local_path

    def add_import_map(self, import_map: ImportMap) -> None:
        for url, address in import_map.imports.items():
            # Prefix entries and blocked entries name no single module.
            if url.endswith("/") or address is None or not address.startswith("file:"):
                continue
            self._paths.setdefault(url, file_url_to_path(address))

    def get(self, url: str) -> Optional[Path]:
        return self._paths.get(url)

    def __contains__(self, url: object) -> bool:
        return url in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def items(self):
        return self._paths.items()


class VendoredImportMaps:
    """Ordered list of per-fetch import maps, tried first to last.

    A resolution only counts when it lands on a ``file:`` url inside the
    output directory. Urls found in the vendor table win over the maps, and
    the user's import map, when given, is tried after all per-fetch maps.
    """

    def __init__(self, output_dir: Path, fallback: Optional[ImportMap] = None) -> None:
        self.output_dir = output_dir
        self.fallback = fallback
        self.maps: list[ImportMap] = []
        self.table = VendorTable()

    def add(self, import_map: ImportMap) -> None:
        self.maps.append(import_map)
        self.table.add_import_map(import_map)

    def __len__(self) -> int:
        return len(self.maps)

    def _inside_output(self, resolved: str) -> bool:
        if not resolved.startswith("file:"):
            return False
        return is_inside(file_url_to_path(resolved), self.output_dir)

    def _lookup_table(self, base_url: str, specifier: str) -> Optional[str]:
        try:
            url = resolve_module_specifier(create_empty_import_map(), base_url, specifier)
        except ImportMapResolutionError:
            return None
        local_path = self.table.get(url)
        if local_path is None or not is_inside(local_path, self.output_dir):
            return None
        return path_to_file_url(local_path)

    def resolve_all(self, base_url: str, specifier: str) -> Optional[str]:
        """Resolve ``specifier`` to a file url inside the output directory, if any map can."""
        from_table = self._lookup_table(base_url, specifier)
        if from_table is not None:
            return from_table
        candidates = list(self.maps)
        if self.fallback is not None:
            candidates.append(self.fallback)
        for import_map in candidates:
            try:
                resolved = resolve_module_specifier(import_map, base_url, specifier)
            except ImportMapResolutionError:
                continue
            if self._inside_output(resolved):
                return resolved
        return None


def saved_import_map_path(output_dir: Path, resolved_specifier: str) -> Path:
    digest = hashlib.sha256(resolved_specifier.encode("utf-8")).hexdigest()[:16]
    return output_dir / IMPORT_MAPS_DIRNAME / f"{digest}.json"


def save_import_map(import_map: ImportMap, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(import_map.to_dict(), indent=2), encoding="utf-8")


def load_saved_import_map(path: Path) -> Optional[ImportMap]:
    """Load a map written by ``save_import_map``. Unreadable maps yield None."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except json.JSONDecodeError:
        logger.debug("Ignoring corrupt saved import map %s", path)
        return None
    return parse_import_map(data, path_to_file_url(path))


def write_placeholder_module(output_dir: Path) -> Path:
    """Write the shared no-op module that excluded imports are redirected to."""
    placeholder_path = output_dir / PLACEHOLDER_DIRNAME / "mod.js"
    placeholder_path.parent.mkdir(parents=True, exist_ok=True)
    placeholder_path.write_text(PLACEHOLDER_MODULE_CONTENT, encoding="utf-8")
    return placeholder_path


def build_overlay_import_map(specifiers: Iterable[str], placeholder_path: Path) -> ImportMap:
    """Import map that redirects every given specifier to the placeholder module."""
    placeholder_url = path_to_file_url(placeholder_path)
    data = {"imports": {s: placeholder_url for s in dict.fromkeys(specifiers) if s}}
    return parse_import_map(data, placeholder_url)


def _registry_declaration_candidates(subpath: str, types_entry: Optional[str]) -> list[str]:
    if not subpath:
        return [types_entry] if types_entry else []
    subpath = normalize_package_path(subpath)
    if subpath.endswith((".d.ts", ".d.mts", ".d.cts")):
        return [subpath]
    stem = subpath
    for ext in (".js", ".mjs", ".cjs", ".ts"):
        if subpath.endswith(ext):
            stem = subpath[: -len(ext)]
            break
    return [f"{stem}.d.ts", f"{stem}/index.d.ts"]


async def vendor_registry_package(
    resolved_specifier: str,
    packages_dir: Path,
    client: httpx.AsyncClient,
    registry_url: str,
) -> tuple[list[Path], Optional[Path]]:
    """Unpack a registry package and find its declaration file.

    Returns:
        Tuple of (written files, path of the types entry or None)

    Raises:
        RegistryError: If the registry or the tarball cannot be read
    """
    try:
        parsed = parse_registry_specifier(resolved_specifier)
    except ValueError as e:
        raise RegistryError(str(e)) from e

    package = await fetch_package(parsed.name, parsed.version, client, registry_url)
    package_dir = packages_dir.joinpath(*f"{package.name}@{package.version}".split("/"))
    candidates = _registry_declaration_candidates(parsed.subpath, package.types_entry)

    written: list[Path] = []
    found: dict[str, Path] = {}
    async for path, data in package.stream_contents(client):
        destination = package_dir / path
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        written.append(destination)
        if path in candidates:
            found[path] = destination

    types_path = next((found[c] for c in candidates if c in found), None)
    return written, types_path


@dataclass
class VendorResult:
    """Everything the vendoring phase produced.

    Attributes:
        import_maps: Per-fetch import maps, including those of skipped urls
        vendored: Resolved urls that were vendored in this run
        skipped: Resolved urls reused from a previous run
        failures: Resolved url -> sub-resources that failed to fetch
    """

    import_maps: VendoredImportMaps
    vendored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: dict[str, list[FetchFailure]] = field(default_factory=dict)

    @property
    def table(self) -> VendorTable:
        """Every module the rewriter and the path table can resolve to."""
        return self.import_maps.table


def _warn_partial_failure(
    resolved_specifier: str, records: list[ImportRecord], failures: list[FetchFailure]
) -> None:
    failed = "\n".join(f"  {f.url}: {f.error}" for f in failures)
    logger.warning(
        "Some files imported by %s could not be fetched:\n%s\n\n%s\n\n%s",
        resolved_specifier,
        failed,
        _describe_importers(resolved_specifier, records),
        exclusion_hint(resolved_specifier, records),
    )


async def vendor_remote_imports(
    groups: dict[str, list[ImportRecord]],
    output_dir: Path,
    user_import_map: ImportMap,
    exclude_urls: list[str],
    placeholder_specifiers: list[str],
    previously_vendored: set[str],
    client: httpx.AsyncClient,
    registry_url: str,
) -> VendorResult:
    """Vendor every resolved url, reusing work from the previous complete run.

    Args:
        groups: Import records grouped by resolved url
        output_dir: Absolute output directory
        user_import_map: The user's import map
        exclude_urls: Specifiers and urls redirected to the placeholder module
        placeholder_specifiers: Additional specifiers redirected to the placeholder
        previously_vendored: Resolved urls vendored by the last complete run
        client: HTTP client shared by all requests
        registry_url: Package registry for versioned package specifiers

    Returns:
        VendorResult describing what was vendored

    Raises:
        VendorError: If a top-level url cannot be fetched from source
        RegistryFetchError: If a versioned package cannot be fetched
    """
    vendor_dir = output_dir / VENDOR_DIRNAME
    packages_dir = output_dir / PACKAGES_DIRNAME

    placeholder_path = write_placeholder_module(output_dir)
    overlay = build_overlay_import_map([*exclude_urls, *placeholder_specifiers], placeholder_path)
    fetch_import_map = user_import_map.merged(overlay)

    result = VendorResult(import_maps=VendoredImportMaps(output_dir, fallback=user_import_map))

    for resolved_specifier, records in groups.items():
        saved_path = saved_import_map_path(output_dir, resolved_specifier)

        if resolved_specifier in previously_vendored:
            saved = load_saved_import_map(saved_path)
            if saved is not None:
                logger.debug("Skipping %s, it was vendored in a previous run", resolved_specifier)
                result.import_maps.add(saved)
                result.skipped.append(resolved_specifier)
                continue
            logger.debug("No saved import map for %s, vendoring again", resolved_specifier)

        if is_registry_specifier(resolved_specifier):
            logger.info("Fetching package %s", resolved_specifier)
            try:
                files, types_path = await vendor_registry_package(
                    resolved_specifier, packages_dir, client, registry_url
                )
            except RegistryError as e:
                raise RegistryFetchError(resolved_specifier, records, str(e)) from e
            logger.debug("Unpacked %d files for %s", len(files), resolved_specifier)
            imports: dict[str, str] = {}
            if types_path is None:
                logger.warning(
                    "Package %s does not declare a types entry, no types will be available for it",
                    resolved_specifier,
                )
            else:
                imports[resolved_specifier] = path_to_file_url(types_path)
            package_map = parse_import_map({"imports": imports}, path_to_file_url(saved_path))
        else:
            logger.info("Vendoring %s", resolved_specifier)
            import_map_path = vendor_dir / IMPORT_MAP_FILENAME
            outcome = VendorOutcome(import_map_path=import_map_path)
            try:
                outcome.files = await vendor_modules(
                    [resolved_specifier],
                    vendor_dir,
                    fetch_import_map,
                    include_type_declarations=True,
                    on_fetch_error=outcome.failures.append,
                    client=client,
                )
            except ModuleFetchError as e:
                raise VendorError(resolved_specifier, records, e.error) from e

            if outcome.failures:
                result.failures[resolved_specifier] = outcome.failures
                _warn_partial_failure(resolved_specifier, records, outcome.failures)
            result.table.add(outcome.files)

            # The next call overwrites this file, so it is parsed right away.
            package_map = parse_import_map(
                json.loads(import_map_path.read_text(encoding="utf-8")),
                path_to_file_url(import_map_path),
            )

        save_import_map(package_map, saved_path)
        result.import_maps.add(package_map)
        result.vendored.append(resolved_specifier)

    return result

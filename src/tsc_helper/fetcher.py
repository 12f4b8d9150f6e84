# SPDX-License-Identifier: MIT
"""Recursive module fetching into a local, content-addressed directory tree.

This is the vendor operation: given entry point urls it downloads every
module and its statically discoverable sub-imports into ``output_dir``,
writes an ``import_map.json`` that maps each fetched url (and every raw
specifier of each fetched module) to its local copy, and reports the files
it wrote.

Failures of sub-resources are handed to a callback instead of being raised,
so that a single unreachable asset does not prevent the rest of a module
graph from being vendored.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import unquote, urljoin, urlsplit

import httpx

from .ast_parser import get_script_kind, iter_import_sites, parse_file_ast, ScriptKind
from .errors import TscHelperError
from .import_map import (
    ImportMap,
    ImportMapResolutionError,
    path_to_file_url,
    quote_path,
    resolve_module_specifier,
)

logger = logging.getLogger(__name__)

IMPORT_MAP_FILENAME = "import_map.json"
TYPES_HEADER = "x-typescript-types"

_EXTENSION_BY_MEDIA_TYPE = {
    "application/typescript": ".ts",
    "application/x-typescript": ".ts",
    "text/typescript": ".ts",
    "video/mp2t": ".ts",
    "video/vnd.dlna.mpeg-tts": ".ts",
    "application/javascript": ".js",
    "application/x-javascript": ".js",
    "application/ecmascript": ".js",
    "text/javascript": ".js",
    "text/ecmascript": ".js",
    "text/jsx": ".jsx",
    "text/tsx": ".tsx",
    "application/json": ".json",
    "text/json": ".json",
    "application/wasm": ".wasm",
    "text/css": ".css",
}
_KNOWN_EXTENSIONS = frozenset(
    {".js", ".mjs", ".cjs", ".jsx", ".ts", ".mts", ".cts", ".tsx", ".json", ".wasm", ".css"}
)
_UNSAFE_CHARS_RE = re.compile(r"[^\w.@~+\-]")
_EXPORT_ASSIGNMENT_RE = re.compile(r"^\s*export\s*=", re.MULTILINE)
_DEFAULT_EXPORT_RE = re.compile(r"\bexport\s+default\b|\bas\s+default\b")


class ModuleFetchError(TscHelperError):
    """Raised when an entry point itself cannot be fetched."""

    def __init__(self, url: str, error: str) -> None:
        self.url = url
        self.error = error
        super().__init__(f"Failed to fetch {url}: {error}")


@dataclass(frozen=True)
class VendoredFile:
    """A fetched module and where it was written."""

    source_url: str
    local_path: Path


@dataclass(frozen=True)
class FetchFailure:
    """A sub-resource that could not be fetched."""

    url: str
    error: str


FetchErrorCallback = Callable[[FetchFailure], None]


@dataclass
class _FetchedModule:
    url: str
    local_path: Path
    # raw specifier -> resolved url
    specifiers: dict[str, str] = field(default_factory=dict)
    types_url: Optional[str] = None

    def dependencies(self) -> list[str]:
        urls = [u for u in self.specifiers.values() if not u.startswith("file:")]
        if self.types_url is not None:
            urls.append(self.types_url)
        return urls


def declaration_path_for(module_path: Path) -> Path:
    """Sibling path with the true extension replaced by ``.d.ts``."""
    name = module_path.name
    for suffix in (".d.ts", ".d.mts", ".d.cts"):
        if name.endswith(suffix):
            return module_path
    stem = module_path.stem if module_path.suffix else name
    return module_path.with_name(stem + ".d.ts")


def declaration_stub(declaration_path: Path, stub_path: Path) -> str:
    """Declaration text that re-exports ``declaration_path`` from ``stub_path``.

    Used when the declarations announced for a module live at their own url,
    so their relative imports keep resolving next to the real file.
    """
    target = Path(os.path.relpath(declaration_path, stub_path.parent)).as_posix()
    if not target.startswith("../"):
        target = "./" + target
    try:
        text = declaration_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        text = ""

    if _EXPORT_ASSIGNMENT_RE.search(text):
        return f'import types = require("{target}");\nexport = types;\n'
    lines = [f'export * from "{target}";']
    if _DEFAULT_EXPORT_RE.search(text):
        lines.append(f'export {{ default }} from "{target}";')
    return "\n".join(lines) + "\n"


def _sanitize(segment: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", unquote(segment))


def url_to_local_path(url: str, output_dir: Path, content_type: Optional[str] = None) -> Path:
    """Map a remote url to its location inside ``output_dir``.

    The layout is ``<host>[_<port>]/<path segments>``. Characters that are
    not safe in file names become ``_``; a query string is folded into the
    file name as a short hash. When the path has no recognizable extension,
    one is derived from ``content_type``.

    Two different urls can map to the same path after sanitizing; the file
    written last wins.
    """
    parts = urlsplit(url)
    host = _sanitize(parts.hostname or "_")
    if parts.port is not None:
        host = f"{host}_{parts.port}"

    segments = [_sanitize(s) for s in parts.path.split("/") if s not in ("", ".", "..")]
    if not segments or parts.path.endswith("/"):
        segments.append("index")

    file_name = segments[-1]
    stem, dot, suffix = file_name.rpartition(".")
    extension = f".{suffix}" if dot else ""
    if extension.lower() not in _KNOWN_EXTENSIONS:
        stem, extension = file_name, ""
        if content_type:
            media_type = content_type.split(";", 1)[0].strip().lower()
            extension = _EXTENSION_BY_MEDIA_TYPE.get(media_type, "")
    if parts.query:
        digest = hashlib.sha256(parts.query.encode("utf-8")).hexdigest()[:8]
        stem = f"{stem}_{digest}"
    segments[-1] = stem + extension

    return output_dir.joinpath(host, *segments)


def _relative_address(path: Path, base_dir: Path) -> str:
    return "./" + quote_path(Path(os.path.relpath(path, base_dir)).as_posix())


def _scope_key(specifier: str, local_path: Path) -> str:
    # Relative keys are resolved against the map, not the module, so they are
    # written as the file url the specifier resolves to from the local copy.
    if specifier.startswith(("./", "../")):
        return urljoin(path_to_file_url(local_path), specifier)
    return specifier


class _ModuleGraphFetcher:
    """Breadth-first fetch of a module graph."""

    def __init__(
        self,
        output_dir: Path,
        import_map: ImportMap,
        include_type_declarations: bool,
        on_fetch_error: Optional[FetchErrorCallback],
        client: httpx.AsyncClient,
    ) -> None:
        self.output_dir = output_dir
        self.import_map = import_map
        self.include_type_declarations = include_type_declarations
        self.on_fetch_error = on_fetch_error
        self.client = client
        self.modules: dict[str, _FetchedModule] = {}
        self.failed: set[str] = set()

    def _report(self, url: str, error: str) -> None:
        self.failed.add(url)
        logger.debug("Failed to fetch %s: %s", url, error)
        if self.on_fetch_error is not None:
            self.on_fetch_error(FetchFailure(url=url, error=error))

    async def _fetch_module(self, url: str) -> _FetchedModule:
        scheme = urlsplit(url).scheme
        if scheme not in ("http", "https"):
            raise httpx.UnsupportedProtocol(f"Unsupported url scheme {scheme!r}")

        response = await self.client.get(url, follow_redirects=True)
        response.raise_for_status()

        final_url = str(response.url)
        content_type = response.headers.get("content-type")
        local_path = url_to_local_path(url, self.output_dir, content_type)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(response.content)
        logger.debug("Vendored %s to %s", url, local_path)

        module = _FetchedModule(url=url, local_path=local_path)
        if self.include_type_declarations and TYPES_HEADER in response.headers:
            module.types_url = urljoin(final_url, response.headers[TYPES_HEADER])

        if get_script_kind(local_path.name) is ScriptKind.UNKNOWN:
            return module
        source_file = parse_file_ast(response.text, str(local_path))
        if source_file is None:
            return module
        for site in iter_import_sites(source_file):
            try:
                resolved = resolve_module_specifier(self.import_map, final_url, site.specifier)
            except ImportMapResolutionError as e:
                self._report(site.specifier, str(e))
                continue
            module.specifiers[site.specifier] = resolved
        return module

    def _write_declaration_stubs(self) -> None:
        for module in self.modules.values():
            types_module = self.modules.get(module.types_url or "")
            if types_module is None:
                continue
            stub_path = declaration_path_for(module.local_path)
            if stub_path == types_module.local_path:
                continue
            stub_path.write_text(
                declaration_stub(types_module.local_path, stub_path), encoding="utf-8"
            )

    async def run(self, entry_points: list[str]) -> None:
        entry_set = set(entry_points)
        pending = list(dict.fromkeys(entry_points))
        while pending:
            results = await asyncio.gather(
                *(self._fetch_module(url) for url in pending),
                return_exceptions=True,
            )
            next_pending: list[str] = []
            for url, result in zip(pending, results):
                if isinstance(result, httpx.HTTPError):
                    if url in entry_set:
                        raise ModuleFetchError(url, str(result))
                    self._report(url, str(result))
                    continue
                if isinstance(result, BaseException):
                    raise result
                self.modules[url] = result
                for resolved in result.dependencies():
                    if resolved in self.modules or resolved in self.failed:
                        continue
                    if resolved in next_pending or resolved in pending:
                        continue
                    next_pending.append(resolved)
            pending = next_pending

        self._write_declaration_stubs()

    def build_import_map(self) -> dict:
        imports: dict[str, str] = {}
        scopes: dict[str, dict[str, str]] = {}
        for url, module in self.modules.items():
            imports[url] = _relative_address(module.local_path, self.output_dir)
            scope: dict[str, str] = {}
            for specifier, resolved in module.specifiers.items():
                key = _scope_key(specifier, module.local_path)
                if resolved.startswith("file:"):
                    scope[key] = resolved
                elif resolved in self.modules:
                    scope[key] = _relative_address(
                        self.modules[resolved].local_path, self.output_dir
                    )
            if scope:
                scopes[_relative_address(module.local_path, self.output_dir)] = scope
        return {"imports": imports, "scopes": scopes}


async def vendor_modules(
    entry_points: list[str],
    output_dir: Path,
    import_map: ImportMap,
    include_type_declarations: bool,
    on_fetch_error: Optional[FetchErrorCallback],
    client: httpx.AsyncClient,
) -> list[VendoredFile]:
    """Fetch ``entry_points`` and everything they import into ``output_dir``.

    Args:
        entry_points: Absolute urls of the modules to vendor
        output_dir: Root of the local module tree
        import_map: Map used to resolve specifiers inside fetched modules
        include_type_declarations: Also fetch declarations announced via the
            ``X-TypeScript-Types`` response header, with their own imports,
            and point a sibling ``.d.ts`` of the module at them
        on_fetch_error: Called for each sub-resource that fails to fetch
        client: HTTP client used for every request

    Returns:
        The fetched modules, in fetch order

    Raises:
        ModuleFetchError: If one of the entry points cannot be fetched
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    fetcher = _ModuleGraphFetcher(
        output_dir, import_map, include_type_declarations, on_fetch_error, client
    )
    await fetcher.run(entry_points)

    import_map_path = output_dir / IMPORT_MAP_FILENAME
    import_map_path.write_text(json.dumps(fetcher.build_import_map(), indent=2), encoding="utf-8")

    return [
        VendoredFile(source_url=url, local_path=module.local_path)
        for url, module in fetcher.modules.items()
    ]

# SPDX-License-Identifier: MIT
"""In-place rewriting of vendored files so a standard type checker accepts them.

Every vendored script is rewritten exactly once. A sentinel comment placed on
the first line (after a shebang, if there is one) marks files that were
already processed, which makes rewriting idempotent across runs.

For each file the rewriter:

1. points every import/export specifier that resolves inside the output
   directory at the absolute local path,
2. swaps source-only extensions for ones the type checker accepts
   (``./mod.ts`` becomes ``./mod.js``),
3. records ``@deno-types``/``@ts-types`` directive comments so that the
   referenced declarations can be fetched afterwards, all at once,
4. disables type checking of scripts with ``// @ts-nocheck`` and removes
   triple-slash reference directives, whose targets do not exist locally.

Edits are applied to byte offsets of the string literal nodes, so the rest
of the file is left exactly as it was.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import httpx
from tree_sitter import Node

from .ast_parser import (
    ScriptKind,
    SourceFile,
    get_script_kind,
    import_site_for,
    parse_file_ast,
    walk,
)
from .collector import read_dir_recursive
from .errors import TscHelperError
from .fetcher import declaration_path_for
from .import_map import (
    ImportMapResolutionError,
    create_empty_import_map,
    file_url_to_path,
    path_to_file_url,
    resolve_module_specifier,
)

logger = logging.getLogger(__name__)

# Split so this file is never mistaken for a rewritten one.
SENTINEL = "// tsc_" + "helper_modified"
TS_NOCHECK = "// @ts-nocheck"

TYPES_DIRECTIVE_RE = re.compile(r'//\s*@(?:deno|ts)-types\s*=\s*"(?P<url>.*)"')

# Longest suffix first so ".d.ts" wins over ".ts".
EXTENSION_RENAMES = (
    (".d.mts", ".mjs"),
    (".d.cts", ".cjs"),
    (".d.ts", ".js"),
    (".mts", ".mjs"),
    (".cts", ".cjs"),
    (".tsx", ".js"),
    (".ts", ".js"),
)

_NOCHECK_KINDS = (ScriptKind.JS, ScriptKind.JSX, ScriptKind.TS, ScriptKind.TSX)

ResolveAll = Callable[[str, str], Optional[str]]


class VendoredFileRewriteError(TscHelperError):
    """Raised when a rewritten file cannot be written back."""

    pass


@dataclass(frozen=True)
class TypeCommentReference:
    """A directive comment naming the declarations for an import.

    Attributes:
        declaration_url: Url given in the directive
        referencing_file_path: Vendored file containing the directive
        module_specifier: Specifier of the import the directive is attached to
    """

    declaration_url: str
    referencing_file_path: Path
    module_specifier: str


@dataclass
class RewriteResult:
    """Result of rewriting one vendored file.

    Attributes:
        path: The vendored file
        modified: Whether the file was written
        specifiers_rewritten: Number of specifier literals that changed
        references: Directive comments found in the file
    """

    path: Path
    modified: bool = False
    specifiers_rewritten: int = 0
    references: list[TypeCommentReference] = field(default_factory=list)


def rename_extension(specifier: str) -> str:
    """Swap a source-only extension for the one the type checker accepts."""
    for old, new in EXTENSION_RENAMES:
        if specifier.endswith(old):
            return specifier[: -len(old)] + new
    return specifier


def is_already_rewritten(text: str) -> bool:
    """Check for the sentinel on the first line after an optional shebang."""
    lines = text.split("\n", 2)
    index = 1 if lines and lines[0].startswith("#!") else 0
    return len(lines) > index and lines[index].rstrip("\r") == SENTINEL


def _insert_header(text: str, header_lines: list[str]) -> str:
    lines = text.split("\n")
    index = 1 if lines and lines[0].startswith("#!") else 0
    lines[index:index] = header_lines
    return "\n".join(lines)


def _strip_reference_directives(text: str) -> str:
    return "\n".join(
        line for line in text.split("\n") if not line.lstrip().startswith("/// <reference")
    )


def _quote_like(literal_text: str, value: str) -> str:
    quote = literal_text[0] if literal_text[:1] in ("'", '"') else '"'
    escaped = value.replace("\\", "\\\\").replace(quote, "\\" + quote)
    return f"{quote}{escaped}{quote}"


def _directive_reference(
    node: Node, source_file: SourceFile, file_path: Path, specifier: str
) -> Optional[TypeCommentReference]:
    comment = source_file.leading_comment(node)
    if comment is None:
        return None
    match = TYPES_DIRECTIVE_RE.search(comment)
    if match is None or not match.group("url"):
        return None
    return TypeCommentReference(
        declaration_url=match.group("url"),
        referencing_file_path=file_path,
        module_specifier=specifier,
    )


def rewrite_source(
    text: str,
    file_path: Path,
    resolve_all: ResolveAll,
) -> tuple[Optional[str], int, list[TypeCommentReference]]:
    """Rewrite the text of one vendored file.

    Returns:
        Tuple of (new text or None when the file is left alone, number of
        rewritten specifiers, collected directive references)
    """
    if is_already_rewritten(text):
        return None, 0, []

    source_file = parse_file_ast(text, str(file_path))
    if source_file is None:
        return None, 0, []

    base_url = path_to_file_url(file_path)
    edits: list[tuple[int, int, bytes]] = []
    references: list[TypeCommentReference] = []

    def visit(node: Node, sf: SourceFile) -> None:
        site = import_site_for(node, sf)
        if site is None:
            return
        if site.kind != "dynamic":
            reference = _directive_reference(node, sf, file_path, site.specifier)
            if reference is not None:
                references.append(reference)

        new_specifier = site.specifier
        resolved = resolve_all(base_url, site.specifier)
        if resolved is not None:
            new_specifier = file_url_to_path(resolved).as_posix()
        new_specifier = rename_extension(new_specifier)
        if new_specifier != site.specifier:
            literal_text = sf.node_text(site.literal)
            replacement = _quote_like(literal_text, new_specifier).encode("utf-8")
            edits.append((site.literal.start_byte, site.literal.end_byte, replacement))

    walk(source_file.root, source_file, visit)

    data = source_file.source_bytes
    for start, end, replacement in sorted(edits, reverse=True):
        data = data[:start] + replacement + data[end:]
    modified = data.decode("utf-8")

    header = [SENTINEL]
    if source_file.script_kind in _NOCHECK_KINDS:
        modified = _strip_reference_directives(modified)
        header.append(TS_NOCHECK)
    return _insert_header(modified, header), len(edits), references


def rewrite_file(file_path: Path, resolve_all: ResolveAll) -> RewriteResult:
    """Rewrite a single vendored file in place.

    Raises:
        VendoredFileRewriteError: If the rewritten file cannot be written
    """
    result = RewriteResult(path=file_path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.debug("Skipping %s: not a text file", file_path)
        return result

    rewritten, count, references = rewrite_source(text, file_path, resolve_all)
    result.references = references
    if rewritten is None:
        return result

    try:
        file_path.write_text(rewritten, encoding="utf-8")
    except OSError as e:
        raise VendoredFileRewriteError(f"Failed to write {file_path}: {e}") from e
    result.modified = True
    result.specifiers_rewritten = count
    return result


def rewrite_vendored_files(vendor_dir: Path, resolve_all: ResolveAll) -> list[RewriteResult]:
    """Rewrite every script file below ``vendor_dir``.

    The file list is complete before the first file is written.

    Raises:
        VendoredFileRewriteError: If a rewritten file cannot be written
    """
    if not vendor_dir.exists():
        return []
    file_paths = [
        p for p in read_dir_recursive(vendor_dir) if get_script_kind(p.name) is not ScriptKind.UNKNOWN
    ]
    results = [rewrite_file(file_path, resolve_all) for file_path in file_paths]
    modified = sum(1 for r in results if r.modified)
    logger.debug("Rewrote %d of %d vendored files", modified, len(results))
    return results


async def _fetch_declaration(
    reference: TypeCommentReference,
    resolve_all: ResolveAll,
    client: httpx.AsyncClient,
) -> Optional[Path]:
    base_url = path_to_file_url(reference.referencing_file_path)
    # The directive url would resolve to the vendored copy through the
    # per-fetch maps, so only plain url resolution is used here.
    try:
        declaration_url = resolve_module_specifier(
            create_empty_import_map(), base_url, reference.declaration_url
        )
    except ImportMapResolutionError as e:
        logger.warning("Ignoring types directive in %s: %s", reference.referencing_file_path, e)
        return None
    if declaration_url.startswith("file:"):
        return None

    destination_url = resolve_all(base_url, reference.module_specifier)
    if destination_url is None:
        logger.warning(
            "Types for %r in %s point at %s, but the module was not vendored",
            reference.module_specifier,
            reference.referencing_file_path,
            declaration_url,
        )
        return None

    logger.info("Fetching %s", declaration_url)
    response = await client.get(declaration_url, follow_redirects=True)
    response.raise_for_status()
    destination = declaration_path_for(file_url_to_path(destination_url))
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(response.text, encoding="utf-8")
    return destination


async def fetch_collected_declarations(
    references: list[TypeCommentReference],
    resolve_all: ResolveAll,
    client: httpx.AsyncClient,
) -> list[Path]:
    """Fetch the declarations named by directive comments.

    Each declaration is written beside the vendored module it describes,
    with the module's extension replaced by ``.d.ts``. Fetches run
    concurrently and a failed fetch does not affect the others.

    Returns:
        Paths of the declaration files that were written
    """
    results = await asyncio.gather(
        *(_fetch_declaration(r, resolve_all, client) for r in references),
        return_exceptions=True,
    )
    written: list[Path] = []
    for reference, result in zip(references, results):
        if isinstance(result, Exception):
            logger.warning(
                "Failed to fetch types %s for %s: %s",
                reference.declaration_url,
                reference.referencing_file_path,
                result,
            )
        elif isinstance(result, BaseException):
            raise result
        elif result is not None:
            written.append(result)
    return written

# SPDX-License-Identifier: MIT
"""Single-file JavaScript/TypeScript parsing built on tree-sitter.

Each file is parsed in isolation: nothing here looks at other files or tries
to resolve an import target. Resolution is entirely up to the caller.

Example:
    >>> source = parse_file_ast('import x from "https://example.test/mod.ts";', "a.js")
    >>> [site.specifier for site in iter_import_sites(source)]
    ['https://example.test/mod.ts']
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

import tree_sitter_typescript
from tree_sitter import Language, Node, Parser

logger = logging.getLogger(__name__)

_TYPESCRIPT = Language(tree_sitter_typescript.language_typescript())
_TSX = Language(tree_sitter_typescript.language_tsx())

DECLARATION_SUFFIXES = (".d.ts", ".d.mts", ".d.cts")


class ScriptKind(enum.Enum):
    """How a file is interpreted, derived from its name."""

    JS = "js"
    JSX = "jsx"
    TS = "ts"
    TSX = "tsx"
    DECLARATION = "declaration"
    UNKNOWN = "unknown"


_KIND_BY_SUFFIX = {
    ".js": ScriptKind.JS,
    ".mjs": ScriptKind.JS,
    ".cjs": ScriptKind.JS,
    ".jsx": ScriptKind.JSX,
    ".ts": ScriptKind.TS,
    ".mts": ScriptKind.TS,
    ".cts": ScriptKind.TS,
    ".tsx": ScriptKind.TSX,
}


def get_script_kind(file_name: str) -> ScriptKind:
    """Determine the script kind of a file from its name."""
    lower = file_name.lower()
    if lower.endswith(DECLARATION_SUFFIXES):
        return ScriptKind.DECLARATION
    return _KIND_BY_SUFFIX.get(Path(lower).suffix, ScriptKind.UNKNOWN)


@dataclass(frozen=True)
class ImportSite:
    """A string-literal module specifier found in a file.

    Attributes:
        kind: "import", "export" or "dynamic"
        statement: The import/export statement or ``import()`` call node
        literal: The string literal node holding the specifier
        specifier: The specifier text without quotes
    """

    kind: str
    statement: Node
    literal: Node
    specifier: str


class SourceFile:
    """A parsed file together with the text it was parsed from."""

    def __init__(self, file_name: str, text: str, tree, script_kind: ScriptKind) -> None:
        self.file_name = file_name
        self.text = text
        self.source_bytes = text.encode("utf-8")
        self.tree = tree
        self.script_kind = script_kind

    @property
    def root(self) -> Node:
        """The program node."""
        return self.tree.root_node

    def node_text(self, node: Node) -> str:
        """Source text covered by ``node``."""
        return self.source_bytes[node.start_byte : node.end_byte].decode("utf-8")

    def leading_comment(self, node: Node) -> Optional[str]:
        """Text of the comment directly preceding ``node``, if any."""
        previous = node.prev_sibling
        if previous is not None and previous.type == "comment":
            return self.node_text(previous)
        return None


NodeVisitor = Callable[[Node, SourceFile], None]


def walk(node: Node, source_file: SourceFile, visit: NodeVisitor) -> None:
    """Call ``visit`` for ``node`` and all of its descendants in pre-order."""
    # The cursor is confined to the subtree of ``node``.
    cursor = node.walk()
    while True:
        visit(cursor.node, source_file)
        if cursor.goto_first_child():
            continue
        while not cursor.goto_next_sibling():
            if not cursor.goto_parent():
                return


def parse_file_ast(
    text: str,
    file_name: str,
    visit: Optional[NodeVisitor] = None,
) -> Optional[SourceFile]:
    """Parse the text of a single file.

    Args:
        text: File contents
        file_name: Virtual file name, used to pick the grammar
        visit: Optional callback invoked for every node in pre-order

    Returns:
        The parsed SourceFile, or None when the file cannot be parsed
    """
    script_kind = get_script_kind(file_name)
    if script_kind is ScriptKind.UNKNOWN:
        return None

    language = _TYPESCRIPT if script_kind in (ScriptKind.TS, ScriptKind.DECLARATION) else _TSX
    try:
        tree = Parser(language).parse(text.encode("utf-8"))
    except (ValueError, UnicodeEncodeError) as e:
        logger.debug("tree-sitter failed to parse %s: %s", file_name, e)
        return None
    if tree is None or tree.root_node is None:
        return None
    if tree.root_node.has_error:
        logger.debug("%s contains syntax errors, continuing with a partial tree", file_name)

    source_file = SourceFile(file_name, text, tree, script_kind)
    if visit is not None:
        walk(source_file.root, source_file, visit)
    return source_file


async def parse_file_path_ast(
    file_path: Path,
    visit: Optional[NodeVisitor] = None,
) -> Optional[SourceFile]:
    """Read a file and parse it. Undecodable files yield None."""
    try:
        text = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning("Skipping %s: file is not valid UTF-8", file_path)
        return None
    return parse_file_ast(text, str(file_path), visit)


def _string_value(source_file: SourceFile, node: Node) -> str:
    return source_file.node_text(node)[1:-1]


def _statement_source(node: Node) -> Optional[Node]:
    source = node.child_by_field_name("source")
    if source is not None:
        return source
    # import x = require("y")
    for child in node.named_children:
        if child.type == "import_require_clause":
            return child.child_by_field_name("source")
    return None


def import_site_for(node: Node, source_file: SourceFile) -> Optional[ImportSite]:
    """Return the ImportSite for ``node`` when it carries a literal specifier."""
    if node.type in ("import_statement", "export_statement"):
        literal = _statement_source(node)
        if literal is None or literal.type != "string":
            return None
        kind = "import" if node.type == "import_statement" else "export"
        return ImportSite(kind, node, literal, _string_value(source_file, literal))

    if node.type == "call_expression":
        function = node.child_by_field_name("function")
        arguments = node.child_by_field_name("arguments")
        if function is None or function.type != "import" or arguments is None:
            return None
        args = arguments.named_children
        if len(args) >= 1 and args[0].type == "string":
            return ImportSite("dynamic", node, args[0], _string_value(source_file, args[0]))
    return None


def iter_import_sites(source_file: SourceFile) -> Iterator[ImportSite]:
    """Yield every statically analyzable specifier in source order."""
    sites: list[ImportSite] = []

    def visit(node: Node, sf: SourceFile) -> None:
        site = import_site_for(node, sf)
        if site is not None:
            sites.append(site)

    walk(source_file.root, source_file, visit)
    yield from sites


def static_import_specifiers(source_file: SourceFile) -> Iterator[str]:
    """Yield the specifier text of every import site in source order."""
    for site in iter_import_sites(source_file):
        yield site.specifier

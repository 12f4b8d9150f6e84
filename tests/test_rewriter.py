# SPDX-License-Identifier: MIT
"""Tests for the vendored file rewriter."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest

from tsc_helper.import_map import path_to_file_url
from tsc_helper.rewriter import (
    SENTINEL,
    TS_NOCHECK,
    TypeCommentReference,
    VendoredFileRewriteError,
    fetch_collected_declarations,
    is_already_rewritten,
    rename_extension,
    rewrite_file,
    rewrite_source,
    rewrite_vendored_files,
)


def resolve_nothing(base_url: str, specifier: str) -> Optional[str]:
    return None


def resolver(mapping: dict[str, Path]):
    """resolve_all stand-in that maps specifiers to local files."""

    def resolve_all(base_url: str, specifier: str) -> Optional[str]:
        if specifier in mapping:
            return path_to_file_url(mapping[specifier])
        return None

    return resolve_all


class TestRenameExtension:
    """Tests for rename_extension function."""

    @pytest.mark.parametrize(
        "specifier,expected",
        [
            ("./mod.ts", "./mod.js"),
            ("./mod.tsx", "./mod.js"),
            ("./mod.mts", "./mod.mjs"),
            ("./mod.cts", "./mod.cjs"),
            ("./mod.d.ts", "./mod.js"),
            ("./mod.js", "./mod.js"),
            ("https://x.test/mod", "https://x.test/mod"),
        ],
    )
    def test_rename(self, specifier: str, expected: str):
        assert rename_extension(specifier) == expected


class TestIsAlreadyRewritten:
    """Tests for is_already_rewritten function."""

    def test_first_line(self):
        assert is_already_rewritten(f"{SENTINEL}\nexport {{}};\n")

    def test_after_shebang(self):
        assert is_already_rewritten(f"#!/usr/bin/env -S deno run\n{SENTINEL}\nexport {{}};\n")

    def test_elsewhere_does_not_count(self):
        assert not is_already_rewritten(f"export {{}};\n{SENTINEL}\n")

    def test_empty(self):
        assert not is_already_rewritten("")


class TestRewriteSource:
    """Tests for rewrite_source function."""

    def test_local_specifiers_become_absolute_paths(self, tmp_path: Path):
        dep = tmp_path / "x.test" / "dep.ts"
        text = 'import { a } from "./dep.ts";\nexport { a };\n'

        new_text, count, _ = rewrite_source(text, tmp_path / "x.test" / "mod.ts", resolver({"./dep.ts": dep}))

        expected_path = dep.with_suffix(".js").as_posix()
        assert f'from "{expected_path}";' in new_text
        assert count == 1

    def test_header_and_nocheck(self, tmp_path: Path):
        new_text, _, _ = rewrite_source("export const a = 1;\n", tmp_path / "mod.ts", resolve_nothing)

        assert new_text.split("\n")[:3] == [SENTINEL, TS_NOCHECK, "export const a = 1;"]

    def test_shebang_stays_first(self, tmp_path: Path):
        text = "#!/usr/bin/env node\nexport const a = 1;\n"

        new_text, _, _ = rewrite_source(text, tmp_path / "cli.js", resolve_nothing)

        assert new_text.split("\n")[:3] == ["#!/usr/bin/env node", SENTINEL, TS_NOCHECK]

    def test_declaration_files_are_checked(self, tmp_path: Path):
        text = '/// <reference types="./other.d.ts" />\nexport declare const a: number;\n'

        new_text, _, _ = rewrite_source(text, tmp_path / "mod.d.ts", resolve_nothing)

        assert TS_NOCHECK not in new_text
        assert "/// <reference" in new_text
        assert new_text.startswith(SENTINEL + "\n")

    def test_reference_directives_are_stripped_from_scripts(self, tmp_path: Path):
        text = '/// <reference types="./types.d.ts" />\nexport const a = 1;\n'

        new_text, _, _ = rewrite_source(text, tmp_path / "mod.js", resolve_nothing)

        assert "/// <reference" not in new_text

    def test_already_rewritten_is_left_alone(self, tmp_path: Path):
        text = f'{SENTINEL}\nimport "./dep.ts";\n'

        assert rewrite_source(text, tmp_path / "mod.ts", resolve_nothing) == (None, 0, [])

    def test_unresolved_specifier_only_gets_renamed(self, tmp_path: Path):
        text = 'export * from "https://x.test/other.ts";\n'

        new_text, count, _ = rewrite_source(text, tmp_path / "mod.ts", resolve_nothing)

        assert 'from "https://x.test/other.js";' in new_text
        assert count == 1

    def test_dynamic_import_literal_is_rewritten(self, tmp_path: Path):
        dep = tmp_path / "lazy.ts"
        text = 'const m = await import("./lazy.ts");\n'

        new_text, _, _ = rewrite_source(text, tmp_path / "mod.ts", resolver({"./lazy.ts": dep}))

        assert f'import("{dep.with_suffix(".js").as_posix()}")' in new_text

    def test_single_quotes_are_kept(self, tmp_path: Path):
        new_text, _, _ = rewrite_source("import './dep.ts';\n", tmp_path / "mod.ts", resolve_nothing)

        assert "import './dep.js';" in new_text

    def test_rest_of_file_is_untouched(self, tmp_path: Path):
        text = 'import "./a.ts";\nconst s = "./b.ts"; // "./c.ts"\n'

        new_text, _, _ = rewrite_source(text, tmp_path / "mod.js", resolve_nothing)

        assert 'const s = "./b.ts"; // "./c.ts"' in new_text

    def test_types_directive_is_collected(self, tmp_path: Path):
        file_path = tmp_path / "mod.ts"
        text = (
            '// @deno-types="https://x.test/lib.d.ts"\n'
            'import lib from "https://x.test/lib.js";\n'
            '// @ts-types="./other.d.ts"\n'
            'export * from "./other.js";\n'
        )

        _, _, references = rewrite_source(text, file_path, resolve_nothing)

        assert references == [
            TypeCommentReference("https://x.test/lib.d.ts", file_path, "https://x.test/lib.js"),
            TypeCommentReference("./other.d.ts", file_path, "./other.js"),
        ]

    def test_unrelated_comment_is_not_a_directive(self, tmp_path: Path):
        text = '// just a comment\nimport "./a.js";\n'

        _, _, references = rewrite_source(text, tmp_path / "mod.ts", resolve_nothing)

        assert references == []


class TestRewriteFiles:
    """Tests for rewrite_file and rewrite_vendored_files."""

    def test_rewrites_every_script_once(self, tmp_path: Path):
        vendor = tmp_path / "vendor"
        (vendor / "x.test").mkdir(parents=True)
        mod = vendor / "x.test" / "mod.ts"
        mod.write_text('import "./dep.ts";\n')
        (vendor / "x.test" / "dep.ts").write_text("export {};\n")
        (vendor / "x.test" / "data.json").write_text('{"a": 1}')

        first = rewrite_vendored_files(vendor, resolve_nothing)
        after_first = mod.read_text()
        second = rewrite_vendored_files(vendor, resolve_nothing)

        assert sorted(r.path.name for r in first) == ["dep.ts", "mod.ts"]
        assert all(r.modified for r in first)
        assert not any(r.modified for r in second)
        assert mod.read_text() == after_first
        assert (vendor / "x.test" / "data.json").read_text() == '{"a": 1}'

    def test_missing_vendor_dir(self, tmp_path: Path):
        assert rewrite_vendored_files(tmp_path / "vendor", resolve_nothing) == []

    def test_binary_file_is_skipped(self, tmp_path: Path):
        path = tmp_path / "bin.js"
        path.write_bytes(b"\xff\xfe\x00")

        result = rewrite_file(path, resolve_nothing)

        assert result.modified is False

    def test_write_error_raises(self, tmp_path: Path):
        path = tmp_path / "mod.ts"
        path.write_text("export {};\n")

        with patch.object(Path, "write_text", side_effect=PermissionError("read-only")):
            with pytest.raises(VendoredFileRewriteError, match="mod.ts"):
                rewrite_file(path, resolve_nothing)


class TestFetchCollectedDeclarations:
    """Tests for fetch_collected_declarations function."""

    @pytest.mark.asyncio
    async def test_writes_declaration_beside_module(self, tmp_path: Path, remote):
        module = tmp_path / "x.test" / "lib.js"
        module.parent.mkdir(parents=True)
        module.write_text("export default 1;\n")
        remote.add("https://x.test/lib.d.ts", "declare const x: number;\nexport default x;\n")
        reference = TypeCommentReference(
            "https://x.test/lib.d.ts", tmp_path / "x.test" / "mod.ts", "https://x.test/lib.js"
        )

        async with remote.client() as client:
            written = await fetch_collected_declarations(
                [reference], resolver({"https://x.test/lib.js": module}), client
            )

        assert written == [tmp_path / "x.test" / "lib.d.ts"]
        assert written[0].read_text().startswith("declare const x")

    @pytest.mark.asyncio
    async def test_relative_directive_resolves_against_source_url(self, tmp_path: Path, remote):
        module = tmp_path / "x.test" / "lib.js"
        reference = TypeCommentReference(
            "./types.d.ts", tmp_path / "x.test" / "mod.ts", "https://x.test/lib.js"
        )

        async with remote.client() as client:
            written = await fetch_collected_declarations(
                [reference], resolver({"https://x.test/lib.js": module}), client
            )

        assert written == []
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, tmp_path: Path, remote, caplog):
        good = tmp_path / "x.test" / "good.js"
        bad = tmp_path / "x.test" / "bad.js"
        remote.add("https://x.test/good.d.ts", "export {};\n")
        references = [
            TypeCommentReference("https://x.test/bad.d.ts", tmp_path / "mod.ts", "bad"),
            TypeCommentReference("https://x.test/good.d.ts", tmp_path / "mod.ts", "good"),
        ]

        with caplog.at_level(logging.WARNING, logger="tsc_helper.rewriter"):
            async with remote.client() as client:
                written = await fetch_collected_declarations(
                    references, resolver({"good": good, "bad": bad}), client
                )

        assert written == [tmp_path / "x.test" / "good.d.ts"]
        assert "bad.d.ts" in caplog.text

    @pytest.mark.asyncio
    async def test_module_that_was_not_vendored_is_skipped(self, tmp_path: Path, remote, caplog):
        reference = TypeCommentReference(
            "https://x.test/lib.d.ts", tmp_path / "mod.ts", "https://x.test/lib.js"
        )

        async with remote.client() as client:
            written = await fetch_collected_declarations([reference], resolve_nothing, client)

        assert written == []
        assert "was not vendored" in caplog.text

# SPDX-License-Identifier: MIT
"""Tests for import map parsing and specifier resolution."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from tsc_helper.errors import ConfigError
from tsc_helper.import_map import (
    ImportMapResolutionError,
    create_empty_import_map,
    file_url_to_path,
    is_inside,
    load_import_map,
    parse_import_map,
    path_to_file_url,
    resolve_module_specifier,
)

MAP_URL = "file:///project/import_map.json"
IMPORTER = "file:///project/src/main.ts"


class TestResolveModuleSpecifier:
    """Tests for resolve_module_specifier function."""

    def test_absolute_url_passes_through(self):
        resolved = resolve_module_specifier(
            create_empty_import_map(), IMPORTER, "https://example.test/mod.ts"
        )

        assert resolved == "https://example.test/mod.ts"

    def test_relative_specifier_resolves_against_importer(self):
        resolved = resolve_module_specifier(create_empty_import_map(), IMPORTER, "../lib/a.ts")

        assert resolved == "file:///project/lib/a.ts"

    def test_dot_segments_are_removed(self):
        resolved = resolve_module_specifier(
            create_empty_import_map(), IMPORTER, "https://example.test/a/../b/./c.ts"
        )

        assert resolved == "https://example.test/b/c.ts"

    def test_bare_specifier_without_mapping_raises(self):
        with pytest.raises(ImportMapResolutionError, match="lodash"):
            resolve_module_specifier(create_empty_import_map(), IMPORTER, "lodash")

    def test_exact_mapping(self):
        import_map = parse_import_map({"imports": {"lodash": "https://esm.test/lodash.js"}}, MAP_URL)

        assert resolve_module_specifier(import_map, IMPORTER, "lodash") == "https://esm.test/lodash.js"

    def test_prefix_mapping(self):
        import_map = parse_import_map({"imports": {"std/": "https://deno.test/std@0.1/"}}, MAP_URL)

        resolved = resolve_module_specifier(import_map, IMPORTER, "std/path/mod.ts")

        assert resolved == "https://deno.test/std@0.1/path/mod.ts"

    def test_most_specific_prefix_wins(self):
        import_map = parse_import_map(
            {
                "imports": {
                    "std/": "https://deno.test/std@0.1/",
                    "std/path/": "https://mirror.test/path/",
                }
            },
            MAP_URL,
        )

        assert (
            resolve_module_specifier(import_map, IMPORTER, "std/path/mod.ts")
            == "https://mirror.test/path/mod.ts"
        )
        assert (
            resolve_module_specifier(import_map, IMPORTER, "std/fs/mod.ts")
            == "https://deno.test/std@0.1/fs/mod.ts"
        )

    def test_url_prefix_mapping(self):
        import_map = parse_import_map(
            {"imports": {"https://deno.test/std/": "https://mirror.test/std/"}}, MAP_URL
        )

        resolved = resolve_module_specifier(import_map, IMPORTER, "https://deno.test/std/a.ts")

        assert resolved == "https://mirror.test/std/a.ts"

    def test_relative_address_resolves_against_map(self):
        import_map = parse_import_map({"imports": {"utils": "./lib/utils.ts"}}, MAP_URL)

        assert resolve_module_specifier(import_map, IMPORTER, "utils") == "file:///project/lib/utils.ts"

    def test_scopes_take_priority(self):
        import_map = parse_import_map(
            {
                "imports": {"lodash": "https://a.test/lodash.js"},
                "scopes": {"./vendor/": {"lodash": "https://b.test/lodash.js"}},
            },
            MAP_URL,
        )

        assert (
            resolve_module_specifier(import_map, "file:///project/vendor/x.ts", "lodash")
            == "https://b.test/lodash.js"
        )
        assert resolve_module_specifier(import_map, IMPORTER, "lodash") == "https://a.test/lodash.js"

    def test_prefix_without_trailing_slash_address_is_blocked(self, caplog):
        import_map = parse_import_map({"imports": {"a/": "https://a.test/a"}}, MAP_URL)

        assert "must end with '/'" in caplog.text
        with pytest.raises(ImportMapResolutionError, match="blocked"):
            resolve_module_specifier(import_map, IMPORTER, "a/b.ts")

    def test_backtracking_above_prefix_raises(self):
        import_map = parse_import_map({"imports": {"std/": "https://deno.test/std/"}}, MAP_URL)

        with pytest.raises(ImportMapResolutionError, match="backtracks"):
            resolve_module_specifier(import_map, IMPORTER, "std/../../secret.ts")


class TestParseImportMap:
    """Tests for parse_import_map function."""

    def test_non_object_raises(self):
        with pytest.raises(ConfigError):
            parse_import_map(["not", "a", "map"], MAP_URL)

    def test_non_object_imports_raises(self):
        with pytest.raises(ConfigError):
            parse_import_map({"imports": "nope"}, MAP_URL)

    def test_non_string_address_is_dropped(self, caplog):
        import_map = parse_import_map({"imports": {"a": 42}}, MAP_URL)

        assert import_map.imports == {"a": None}
        assert "address must be a string" in caplog.text

    def test_keys_sorted_most_specific_first(self):
        import_map = parse_import_map(
            {"imports": {"a/": "https://a.test/", "a/b/": "https://b.test/"}}, MAP_URL
        )

        assert list(import_map.imports) == ["a/b/", "a/"]


class TestMerged:
    """Tests for ImportMap.merged."""

    def test_other_wins(self):
        first = parse_import_map(
            {"imports": {"a": "https://one.test/a.js", "b": "https://one.test/b.js"}}, MAP_URL
        )
        second = parse_import_map({"imports": {"a": "https://two.test/a.js"}}, MAP_URL)

        merged = first.merged(second)

        assert resolve_module_specifier(merged, IMPORTER, "a") == "https://two.test/a.js"
        assert resolve_module_specifier(merged, IMPORTER, "b") == "https://one.test/b.js"

    def test_to_dict_round_trips_absolute_addresses(self):
        import_map = parse_import_map(
            {"imports": {"utils": "./utils.ts"}, "scopes": {"./v/": {"x": "./x.ts"}}}, MAP_URL
        )

        reparsed = parse_import_map(import_map.to_dict(), "file:///elsewhere/map.json")

        assert reparsed.imports == import_map.imports
        assert reparsed.scopes == import_map.scopes


class TestFileUrls:
    """Tests for file url helpers."""

    def test_round_trip(self, tmp_path: Path):
        path = tmp_path / "with space" / "@scope" / "mod.ts"

        url = path_to_file_url(path)

        assert url.startswith("file:///")
        assert "%20" in url
        assert "@scope" in url
        assert file_url_to_path(url) == path

    def test_file_url_to_path_rejects_other_schemes(self):
        with pytest.raises(ValueError):
            file_url_to_path("https://example.test/a.ts")

    def test_is_inside(self, tmp_path: Path):
        assert is_inside(tmp_path / "a" / "b", tmp_path)
        assert is_inside(tmp_path, tmp_path)
        assert not is_inside(tmp_path.parent, tmp_path)
        assert not is_inside(Path(str(tmp_path) + "-sibling"), tmp_path)


class TestLoadImportMap:
    """Tests for load_import_map function."""

    def test_no_map_configured(self, tmp_path: Path):
        import_map, path = load_import_map(None, tmp_path)

        assert path is None
        assert import_map.imports == {}

    def test_loads_relative_to_cwd(self, tmp_path: Path):
        (tmp_path / "import_map.json").write_text(
            json.dumps({"imports": {"utils": "./lib/utils.ts"}})
        )

        import_map, path = load_import_map("import_map.json", tmp_path)

        assert path == (tmp_path / "import_map.json").resolve()
        resolved = resolve_module_specifier(import_map, path_to_file_url(tmp_path / "a.ts"), "utils")
        assert resolved == path_to_file_url((tmp_path / "lib" / "utils.ts").resolve())

    def test_missing_map_raises(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_import_map("missing.json", tmp_path)

    def test_corrupt_map_raises(self, tmp_path: Path):
        (tmp_path / "import_map.json").write_text("{not json")

        with pytest.raises(ConfigError, match="not valid JSON"):
            load_import_map("import_map.json", tmp_path)


# =============================================================================
# Strategies for generating test data
# =============================================================================

segment = st.from_regex(r"[a-z0-9][a-z0-9_-]{0,8}", fullmatch=True)
segments = st.lists(segment, min_size=1, max_size=4)


class TestResolutionProperties:
    """Property tests for prefix resolution."""

    @given(parts=segments)
    @settings(max_examples=100)
    def test_prefix_mapped_specifiers_stay_below_address(self, parts: list[str]):
        import_map = parse_import_map({"imports": {"lib/": "https://cdn.test/lib@1/"}}, MAP_URL)

        resolved = resolve_module_specifier(import_map, IMPORTER, "lib/" + "/".join(parts))

        assert resolved == "https://cdn.test/lib@1/" + "/".join(parts)

    @given(parts=segments, importer_parts=segments)
    @settings(max_examples=100)
    def test_resolution_is_deterministic(self, parts: list[str], importer_parts: list[str]):
        import_map = parse_import_map(
            {"imports": {"lib/": "https://cdn.test/lib/", "x": "https://cdn.test/x.js"}}, MAP_URL
        )
        importer = "file:///project/" + "/".join(importer_parts) + ".ts"
        specifier = "lib/" + "/".join(parts)

        first = resolve_module_specifier(import_map, importer, specifier)
        second = resolve_module_specifier(import_map, importer, specifier)

        assert first == second

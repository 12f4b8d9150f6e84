# SPDX-License-Identifier: MIT
"""Option loading for tsc-helper.

Options can be given programmatically, read from a standalone
``tsc-helper.toml`` file, or from the ``[tool.tsc-helper]`` table of a
pyproject-style TOML file. Keys may be written in camelCase (as in the
JavaScript tooling this project mirrors) or snake_case.
"""

from __future__ import annotations

import hashlib
import json
import re
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .errors import ConfigError

DEFAULT_CONFIG_FILENAME = "tsc-helper.toml"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Options that change what ends up in the output directory. A change in any of
# these invalidates a previous run even when the import set is unchanged.
_FINGERPRINT_FIELDS = (
    "exclude_urls",
    "import_map",
    "extra_type_roots",
    "exact_type_modules",
    "extra_paths",
    "unstable",
    "registry_url",
    "placeholder_specifiers",
)


def _snake_case(key: str) -> str:
    """Convert a camelCase or kebab-case key to snake_case."""
    key = key.replace("-", "_")
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


@dataclass
class GenerateTypesOptions:
    """Options for ``generate_types`` and ``create_cache_hash_file``.

    Attributes:
        include: Local paths to parse imports from
        exclude: Local paths that are never parsed or descended into
        exclude_urls: Specifiers or resolved urls to skip; each gets an
            ambient module declaration instead of real types
        import_map: Path to the user's import map
        output_dir: Directory that receives all generated files
        extra_type_roots: Folder name -> url of extra type roots to fetch
        exact_type_modules: Specifier -> url of a declaration file for it
        extra_paths: Specifier -> local path entries added to tsconfig paths
        unstable: Include unstable runtime apis in the runtime declarations
        cache_hash_file: File name (relative to output_dir) for the CI cache key
        pre_collected_imports_file: File name (relative to output_dir) holding
            collected import data
        log_level: Logging verbosity
        registry_url: Package registry used for ``npm:``/``pkg:`` specifiers
        placeholder_specifiers: Specifiers that vendored modules may import but
            that are always redirected to the no-op placeholder module
    """

    include: list[str] = field(default_factory=lambda: ["."])
    exclude: list[str] = field(default_factory=lambda: [".denoTypes", "node_modules"])
    exclude_urls: list[str] = field(default_factory=list)
    import_map: Optional[str] = None
    output_dir: str = "./.denoTypes"
    extra_type_roots: dict[str, str] = field(default_factory=dict)
    exact_type_modules: dict[str, str] = field(default_factory=dict)
    extra_paths: dict[str, str] = field(default_factory=dict)
    unstable: bool = False
    cache_hash_file: Optional[str] = None
    pre_collected_imports_file: Optional[str] = None
    log_level: str = "INFO"
    registry_url: str = DEFAULT_REGISTRY_URL
    placeholder_specifiers: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate option values after initialization."""
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {self.log_level!r}. Must be one of {', '.join(LOG_LEVELS)}."
            )
        for name in ("include", "exclude", "exclude_urls", "placeholder_specifiers"):
            value = getattr(self, name)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ConfigError(f"Option '{name}' must be a list of strings")
        for name in ("extra_type_roots", "exact_type_modules", "extra_paths"):
            value = getattr(self, name)
            if not isinstance(value, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in value.items()
            ):
                raise ConfigError(f"Option '{name}' must be a table of strings")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GenerateTypesOptions":
        """Create options from a mapping with camelCase or snake_case keys.

        The legacy ``quiet`` flag is accepted and maps to a WARNING log level.

        Raises:
            ConfigError: If an option is unknown or has the wrong type
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for raw_key, value in data.items():
            key = _snake_case(raw_key)
            if key == "quiet":
                if value:
                    kwargs.setdefault("log_level", "WARNING")
                continue
            if key not in known:
                raise ConfigError(f"Unknown option: {raw_key!r}")
            kwargs[key] = value
        try:
            return cls(**kwargs)
        except (TypeError, AttributeError) as e:
            raise ConfigError(f"Invalid options: {e}") from e

    @classmethod
    def from_toml(cls, path: str | Path) -> "GenerateTypesOptions":
        """Load options from a TOML file.

        A ``[tool.tsc-helper]`` table is used when present, otherwise the
        top level of the document.

        Raises:
            ConfigError: If the file is invalid
            FileNotFoundError: If the file does not exist
        """
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        try:
            with open(config_path, "rb") as f:
                document = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML syntax in {config_path}: {e}") from e

        table = document.get("tool", {}).get("tsc-helper")
        if table is None:
            table = {k: v for k, v in document.items() if k != "tool"}
        return cls.from_dict(table)

    def replace(self, **changes: Any) -> "GenerateTypesOptions":
        """Return a copy with the given options overridden, skipping ``None`` values."""
        data = asdict(self)
        data.update({k: v for k, v in changes.items() if v is not None})
        return GenerateTypesOptions(**data)

    def to_echo_dict(self) -> dict[str, Any]:
        """Options that are echoed into the cache hash file."""
        data = asdict(self)
        data.pop("log_level")
        return data

    def fingerprint(self) -> str:
        """Stable digest of the options that affect generated output."""
        data = {name: getattr(self, name) for name in _FINGERPRINT_FIELDS}
        encoded = json.dumps(data, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()


def find_config_file(start_dir: Path) -> Path | None:
    """Find ``tsc-helper.toml`` in ``start_dir`` or one of its parents."""
    current = start_dir.resolve()
    while True:
        candidate = current / DEFAULT_CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        if current.parent == current:
            return None
        current = current.parent


def load_options(config_path: Path | None, cwd: Path) -> GenerateTypesOptions:
    """Load options from an explicit file, a discovered file, or defaults."""
    if config_path is None:
        config_path = find_config_file(cwd)
    if config_path is None:
        return GenerateTypesOptions()
    return GenerateTypesOptions.from_toml(config_path)

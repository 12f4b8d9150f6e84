# SPDX-License-Identifier: MIT
"""Type-checker configuration for Deno projects.

tsc-helper collects the imports of a Deno project, vendors every remote
module, rewrites the vendored files so that a standard TypeScript compiler
accepts them, and writes a tsconfig.json mapping each import to its local
declarations.

Example:
    >>> import asyncio
    >>> from tsc_helper import GenerateTypesOptions, generate_types
    >>>
    >>> options = GenerateTypesOptions(include=["src"], exclude_urls=["npm:react"])
    >>> result = asyncio.run(generate_types(options))
    >>> result.tsconfig_path
    PosixPath('/project/.denoTypes/tsconfig.json')
"""

__version__ = "0.1.0"

from .errors import ConfigError, TscHelperError
from .config import GenerateTypesOptions, load_options
from .ast_parser import ScriptKind, SourceFile, parse_file_ast, parse_file_path_ast
from .import_map import (
    ImportMap,
    ImportMapResolutionError,
    create_empty_import_map,
    parse_import_map,
    resolve_module_specifier,
)
from .collector import (
    CollectedImports,
    ImportCollectionError,
    ImportRecord,
    collect_imports,
)
from .fetcher import FetchFailure, ModuleFetchError, VendoredFile, vendor_modules
from .registry import RegistryError, fetch_package
from .vendor import (
    RegistryFetchError,
    VendorError,
    VendorResult,
    VendorTable,
    vendor_remote_imports,
)
from .rewriter import (
    TypeCommentReference,
    VendoredFileRewriteError,
    fetch_collected_declarations,
    rewrite_vendored_files,
)
from .cache import CacheError, CacheFile, CacheState
from .declarations import DeclarationFetchError, RuntimeTypesGenerator
from .tsconfig import ConfigPathTable, build_cache_hash_content
from .generate import GenerateResult, create_cache_hash_file, generate_types

__all__ = [
    # Errors
    "TscHelperError",
    "ConfigError",
    # Config
    "GenerateTypesOptions",
    "load_options",
    # Parsing
    "ScriptKind",
    "SourceFile",
    "parse_file_ast",
    "parse_file_path_ast",
    # Import maps
    "ImportMap",
    "ImportMapResolutionError",
    "create_empty_import_map",
    "parse_import_map",
    "resolve_module_specifier",
    # Collection
    "CollectedImports",
    "ImportCollectionError",
    "ImportRecord",
    "collect_imports",
    # Fetching and vendoring
    "FetchFailure",
    "ModuleFetchError",
    "VendoredFile",
    "vendor_modules",
    "RegistryError",
    "fetch_package",
    "RegistryFetchError",
    "VendorError",
    "VendorResult",
    "VendorTable",
    "vendor_remote_imports",
    # Rewriting
    "TypeCommentReference",
    "VendoredFileRewriteError",
    "fetch_collected_declarations",
    "rewrite_vendored_files",
    # Cache
    "CacheError",
    "CacheFile",
    "CacheState",
    # Declarations
    "DeclarationFetchError",
    "RuntimeTypesGenerator",
    # Output
    "ConfigPathTable",
    "build_cache_hash_content",
    # Entry points
    "GenerateResult",
    "create_cache_hash_file",
    "generate_types",
]

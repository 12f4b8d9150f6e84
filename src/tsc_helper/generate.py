# SPDX-License-Identifier: MIT
"""The two entry points of tsc-helper.

``generate_types`` runs the whole pipeline and writes a ``tsconfig.json``
into the output directory. ``create_cache_hash_file`` only collects imports
and writes a file that CI systems can hash into a cache key, optionally
together with the collected imports so the next ``generate_types`` run can
skip collection.

Pipeline order for ``generate_types``:

1. runtime declarations (``deno types``), when the runtime version changed
2. extra type roots and exact type modules, when their url changed
3. import collection, or the pre-collected imports file
4. early exit when the previous complete run already covered every import
5. vendoring, rewriting of vendored files, directive declaration fetches
6. ambient modules, ``tsconfig.json`` and finally the cache record

Every cache category is cleared before its work starts and recorded only
when it finishes, so an interrupted run is redone by the next one.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx

from .cache import CACHE_FILENAME, CacheFile
from .collector import CollectedImports, collect_imports
from .config import GenerateTypesOptions
from .declarations import (
    RuntimeTypesGenerator,
    exact_type_module_path,
    fetch_exact_type_modules,
    fetch_type_roots,
    write_runtime_types,
)
from .errors import ConfigError
from .import_map import ImportMap, file_url_to_path, load_import_map, path_to_file_url
from .rewriter import fetch_collected_declarations, rewrite_vendored_files
from .tsconfig import (
    TSCONFIG_FILENAME,
    ConfigPathTable,
    ambient_modules_path,
    build_cache_hash_content,
    read_pre_collected_imports,
    write_ambient_modules,
    write_pre_collected_imports,
    write_tsconfig,
)
from .vendor import VENDOR_DIRNAME, VendorResult, vendor_remote_imports

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
TYPE_ROOTS_DIRNAME = "@types"
EXACT_TYPES_DIRNAME = "exactTypes"


@dataclass
class GenerateResult:
    """Outcome of ``generate_types``.

    Attributes:
        output_dir: Absolute output directory
        tsconfig_path: The generated tsconfig
        paths: Path table written to the tsconfig (empty on early exit)
        up_to_date: True when the run exited early because nothing changed
        vendor_result: Details of the vendoring phase, when it ran
    """

    output_dir: Path
    tsconfig_path: Path
    paths: ConfigPathTable
    up_to_date: bool = False
    vendor_result: Optional[VendorResult] = None


def create_types_dir(output_dir: Path) -> None:
    """Create the output directory and keep it out of version control."""
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / ".gitignore").write_text("**\n", encoding="utf-8")


@contextlib.asynccontextmanager
async def _http_client(client: Optional[httpx.AsyncClient]) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(follow_redirects=True, timeout=HTTP_TIMEOUT) as new_client:
        yield new_client


async def _collect(
    options: GenerateTypesOptions, cwd: Path, output_dir: Path, user_import_map: ImportMap
) -> CollectedImports:
    if options.pre_collected_imports_file:
        collected = read_pre_collected_imports(output_dir / options.pre_collected_imports_file)
        if collected is not None:
            return collected

    logger.info("Collecting import specifiers from script files")
    return await collect_imports(
        base_dir=cwd,
        include=options.include,
        exclude=options.exclude,
        exclude_urls=options.exclude_urls,
        user_import_map=user_import_map,
    )


async def generate_types(
    options: Optional[GenerateTypesOptions] = None,
    cwd: Optional[Path] = None,
    client: Optional[httpx.AsyncClient] = None,
    runtime_types: Optional[RuntimeTypesGenerator] = None,
) -> GenerateResult:
    """Generate declarations and a tsconfig.json for a project.

    Args:
        options: Options, defaults when omitted
        cwd: Project directory; relative option paths are resolved against it
        client: HTTP client to use instead of creating one
        runtime_types: Generator for the runtime's built-in declarations

    Returns:
        GenerateResult describing the run

    Raises:
        TscHelperError: For any error that aborts the run
    """
    options = options or GenerateTypesOptions()
    cwd = (cwd or Path.cwd()).resolve()
    runtime_types = runtime_types or RuntimeTypesGenerator()

    output_dir = (cwd / options.output_dir).resolve()
    type_roots_dir = output_dir / TYPE_ROOTS_DIRNAME
    exact_types_dir = output_dir / EXACT_TYPES_DIRNAME
    tsconfig_path = output_dir / TSCONFIG_FILENAME

    fingerprint = options.fingerprint()
    cache = CacheFile.load(output_dir / CACHE_FILENAME)
    # Work from a run with different options cannot be reused.
    previously_vendored = (
        cache.previously_vendored if cache.state.config_fingerprint == fingerprint else set()
    )
    create_types_dir(output_dir)

    async with _http_client(client) as http:
        desired_tag = await runtime_types.version_tag(options.unstable)
        if cache.state.tool_version_tag != desired_tag:
            logger.info("Generating runtime types")
            cache.update(tool_version_tag="")
            content = await runtime_types.generate(options.unstable)
            await write_runtime_types(type_roots_dir, content)
            cache.update(tool_version_tag=desired_tag)

        cached_type_roots = dict(cache.state.fetched_type_roots)
        cache.update(fetched_type_roots={})
        fetched_type_roots = await fetch_type_roots(
            options.extra_type_roots, cached_type_roots, type_roots_dir, http
        )
        cache.update(fetched_type_roots=fetched_type_roots)

        cached_exact = dict(cache.state.fetched_exact_type_modules)
        cache.update(fetched_exact_type_modules={})
        fetched_exact = await fetch_exact_type_modules(
            options.exact_type_modules, cached_exact, exact_types_dir, http
        )
        cache.update(fetched_exact_type_modules=fetched_exact)

        user_import_map, _ = load_import_map(options.import_map, cwd)
        collected = await _collect(options, cwd, output_dir, user_import_map)
        resolved_specifiers = collected.resolved_specifiers()
        ambient_specifiers = collected.needs_ambient_module_import_specifiers

        if cache.is_up_to_date(resolved_specifiers, fingerprint, ambient_specifiers):
            logger.info("No imports have changed since the last run")
            return GenerateResult(
                output_dir=output_dir,
                tsconfig_path=tsconfig_path,
                paths=ConfigPathTable(),
                up_to_date=True,
            )

        # Anything vendored from here on may be left half-written.
        cache.update(vendored_imports=None)

        vendor_result = await vendor_remote_imports(
            groups=collected.group_by_resolved_specifier(),
            output_dir=output_dir,
            user_import_map=user_import_map,
            exclude_urls=options.exclude_urls,
            placeholder_specifiers=options.placeholder_specifiers,
            previously_vendored=previously_vendored,
            client=http,
            registry_url=options.registry_url,
        )
        resolve_all = vendor_result.import_maps.resolve_all

        logger.info("Modifying vendored files")
        rewrite_results = rewrite_vendored_files(output_dir / VENDOR_DIRNAME, resolve_all)
        references = [ref for r in rewrite_results for ref in r.references]

        if references:
            logger.info("Fetching declaration files for vendored files")
            await fetch_collected_declarations(references, resolve_all, http)

    ambient_path = ambient_modules_path(type_roots_dir)
    if ambient_specifiers:
        logger.info("Creating ambient modules for excluded urls")
        write_ambient_modules(ambient_path, ambient_specifiers)
    else:
        ambient_path.unlink(missing_ok=True)

    paths = ConfigPathTable()
    for record in collected.remote_imports:
        local_url = resolve_all(path_to_file_url(record.importer_file_path), record.resolved_specifier)
        # Only resolutions inside the output directory are surfaced.
        if local_url is None:
            continue
        paths.add(record.import_specifier, file_url_to_path(local_url))
    for specifier in fetched_exact:
        paths.add(specifier, exact_type_module_path(exact_types_dir, specifier))
    for specifier, path in options.extra_paths.items():
        paths.add(specifier, path)
    paths.merge_existing(tsconfig_path)
    for specifier in ambient_specifiers:
        paths.discard(specifier)

    logger.info("Creating tsconfig.json")
    write_tsconfig(tsconfig_path, [str(type_roots_dir)], paths)

    cache.update(
        vendored_imports=sorted(resolved_specifiers),
        config_fingerprint=fingerprint,
        ambient_module_specifiers=sorted(set(ambient_specifiers)),
    )
    logger.info("Done creating types for remote imports")

    return GenerateResult(
        output_dir=output_dir,
        tsconfig_path=tsconfig_path,
        paths=paths,
        vendor_result=vendor_result,
    )


async def create_cache_hash_file(
    options: GenerateTypesOptions,
    cwd: Optional[Path] = None,
) -> Path:
    """Write the cache hash file, and the pre-collected imports file if configured.

    Returns:
        Path of the cache hash file

    Raises:
        ConfigError: If ``cache_hash_file`` is not set
    """
    if not options.cache_hash_file:
        raise ConfigError(
            "The 'cache_hash_file' option is required when making use of create_cache_hash_file."
        )
    cwd = (cwd or Path.cwd()).resolve()
    output_dir = (cwd / options.output_dir).resolve()

    user_import_map, _ = load_import_map(options.import_map, cwd)
    logger.info("Collecting import specifiers from script files")
    collected = await collect_imports(
        base_dir=cwd,
        include=options.include,
        exclude=options.exclude,
        exclude_urls=options.exclude_urls,
        user_import_map=user_import_map,
    )

    create_types_dir(output_dir)
    cache_hash_path = output_dir / options.cache_hash_file
    cache_hash_path.write_text(build_cache_hash_content(options, collected), encoding="utf-8")
    logger.info("Created cache hash file at %s", cache_hash_path)

    if options.pre_collected_imports_file:
        pre_collected_path = output_dir / options.pre_collected_imports_file
        write_pre_collected_imports(pre_collected_path, collected)
        logger.info("Collected imports file written to %s", pre_collected_path)

    return cache_hash_path

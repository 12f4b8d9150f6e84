# SPDX-License-Identifier: MIT
"""CLI entry point for the tsc-helper command."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .config import GenerateTypesOptions, LOG_LEVELS, load_options
from .errors import TscHelperError
from .generate import create_cache_hash_file, generate_types


class Context:
    """CLI context object passed to commands."""

    def __init__(self) -> None:
        self.options: Optional[GenerateTypesOptions] = None
        self.config_path: Optional[Path] = None
        self.log_level: Optional[str] = None
        self.project_dir: Optional[Path] = None

    @property
    def cwd(self) -> Path:
        return self.project_dir or Path.cwd()

    def load_options(self) -> GenerateTypesOptions:
        """Load options, caching the result."""
        if self.options is None:
            options = load_options(self.config_path, self.cwd)
            self.options = options.replace(log_level=self.log_level)
        return self.options


pass_context = click.make_pass_decorator(Context, ensure=True)


def echo_error(message: str) -> None:
    """Print an error message to stderr."""
    click.secho(f"Error: {message}", fg="red", err=True)


def echo_success(message: str) -> None:
    """Print a success message."""
    click.secho(message, fg="green")


def echo_info(message: str) -> None:
    """Print an info message."""
    click.echo(message)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format="%(message)s", force=True)
    # Request logging from httpx is only interesting while debugging.
    if level != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _list_or_none(values: tuple[str, ...]) -> Optional[list[str]]:
    return list(values) if values else None


@click.group()
@click.version_option(package_name="tsc-helper")
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Options file (defaults to tsc-helper.toml in the project or a parent directory).",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Logging verbosity.",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Only print warnings and errors.",
)
@click.option(
    "-C",
    "--directory",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Change to directory before running command.",
)
@pass_context
def cli(
    ctx: Context,
    config_path: Optional[Path],
    log_level: Optional[str],
    quiet: bool,
    directory: Optional[Path],
) -> None:
    """Generate tsconfig.json and type declarations for Deno projects.

    \b
    Examples:
        tsc-helper generate
        tsc-helper generate --exclude-url https://example.test/broken.ts
        tsc-helper cache-hash --cache-hash-file cacheHashFile
    """
    ctx.config_path = config_path
    ctx.project_dir = directory.resolve() if directory else None
    if quiet and log_level is None:
        log_level = "WARNING"
    ctx.log_level = log_level.upper() if log_level else None


@cli.command()
@click.option("--include", "-i", multiple=True, help="Path to parse imports from (repeatable).")
@click.option("--exclude", "-e", multiple=True, help="Path to skip (repeatable).")
@click.option(
    "--exclude-url",
    "exclude_urls",
    multiple=True,
    help="Specifier or url that gets an ambient module instead of types (repeatable).",
)
@click.option("--import-map", help="Path to the import map.")
@click.option("--output-dir", "-o", help="Directory for all generated files.")
@click.option("--unstable/--no-unstable", default=None, help="Include unstable runtime apis.")
@click.option(
    "--pre-collected-imports-file",
    help="Collected imports written by 'cache-hash', relative to the output directory.",
)
@pass_context
def generate(
    ctx: Context,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    exclude_urls: tuple[str, ...],
    import_map: Optional[str],
    output_dir: Optional[str],
    unstable: Optional[bool],
    pre_collected_imports_file: Optional[str],
) -> None:
    """Vendor remote imports and write tsconfig.json into the output directory.

    \b
    Examples:
        tsc-helper generate
        tsc-helper generate -i src -o .denoTypes
        tsc-helper generate --import-map importMap.json
    """
    try:
        options = ctx.load_options().replace(
            include=_list_or_none(include),
            exclude=_list_or_none(exclude),
            exclude_urls=_list_or_none(exclude_urls),
            import_map=import_map,
            output_dir=output_dir,
            unstable=unstable,
            pre_collected_imports_file=pre_collected_imports_file,
        )
    except (TscHelperError, FileNotFoundError) as e:
        echo_error(str(e))
        raise SystemExit(1)
    configure_logging(options.log_level)

    try:
        result = asyncio.run(generate_types(options, cwd=ctx.cwd))
    except TscHelperError as e:
        echo_error(str(e))
        raise SystemExit(1)

    if result.up_to_date:
        echo_info("Types are up to date")
    else:
        echo_success(f"Created {result.tsconfig_path}")


@cli.command("cache-hash")
@click.option("--cache-hash-file", help="File name for the cache hash, relative to the output directory.")
@click.option(
    "--pre-collected-imports-file",
    help="Also write the collected imports to this file, relative to the output directory.",
)
@click.option("--import-map", help="Path to the import map.")
@click.option("--output-dir", "-o", help="Directory for all generated files.")
@pass_context
def cache_hash(
    ctx: Context,
    cache_hash_file: Optional[str],
    pre_collected_imports_file: Optional[str],
    import_map: Optional[str],
    output_dir: Optional[str],
) -> None:
    """Write a file whose hash can serve as a CI cache key.

    \b
    Examples:
        tsc-helper cache-hash --cache-hash-file cacheHashFile
        tsc-helper cache-hash --cache-hash-file cacheHashFile --pre-collected-imports-file imports.json
    """
    try:
        options = ctx.load_options().replace(
            cache_hash_file=cache_hash_file,
            pre_collected_imports_file=pre_collected_imports_file,
            import_map=import_map,
            output_dir=output_dir,
        )
    except (TscHelperError, FileNotFoundError) as e:
        echo_error(str(e))
        raise SystemExit(1)
    configure_logging(options.log_level)

    try:
        path = asyncio.run(create_cache_hash_file(options, cwd=ctx.cwd))
    except TscHelperError as e:
        echo_error(str(e))
        raise SystemExit(1)

    echo_success(f"Created cache hash file at {path}")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except TscHelperError as e:
        echo_error(str(e))
        sys.exit(1)
    except FileNotFoundError as e:
        echo_error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()

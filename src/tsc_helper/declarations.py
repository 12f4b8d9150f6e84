# SPDX-License-Identifier: MIT
"""Declaration files that do not come from vendored modules.

This covers the runtime's built-in api declarations (generated by running
``deno types``), extra type roots and exact type modules, both fetched from
urls given in the options.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

import httpx

from .errors import TscHelperError

logger = logging.getLogger(__name__)

RUNTIME_TYPES_FOLDER = "deno-types"


class DeclarationFetchError(TscHelperError):
    """Raised when a declaration file cannot be generated or fetched."""

    pass


def strip_reference_directives(text: str) -> str:
    """Remove triple-slash reference lines."""
    lines = [line for line in text.split("\n") if not line.startswith("/// <reference")]
    return "\n".join(lines)


class RuntimeTypesGenerator:
    """Produces the runtime's built-in declarations via its command line tool."""

    def __init__(self, command: Sequence[str] = ("deno",)) -> None:
        self.command = list(command)

    async def _run(self, *args: str) -> str:
        cmd = [*self.command, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise DeclarationFetchError(f"Executable not found: {self.command[0]}") from None
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise DeclarationFetchError(
                f"'{' '.join(cmd)}' exited with status {process.returncode}:\n"
                f"{stderr.decode('utf-8', errors='replace')}"
            )
        return stdout.decode("utf-8")

    async def version_tag(self, unstable: bool) -> str:
        """Tag identifying the declarations this runtime would generate."""
        output = await self._run("--version")
        first_line = output.strip().splitlines()[0] if output.strip() else "unknown"
        return first_line + ("-unstable" if unstable else "")

    async def generate(self, unstable: bool) -> str:
        """Generate the runtime declarations without reference directives."""
        args = ["types"]
        if unstable:
            args.append("--unstable")
        return strip_reference_directives(await self._run(*args))


async def write_runtime_types(type_roots_dir: Path, content: str) -> Path:
    """Write the runtime declarations into their own type root folder."""
    types_dir = type_roots_dir / RUNTIME_TYPES_FOLDER
    types_dir.mkdir(parents=True, exist_ok=True)
    types_path = types_dir / "index.d.ts"
    await asyncio.to_thread(types_path.write_text, content, encoding="utf-8")
    return types_path


async def _fetch_declaration(client: httpx.AsyncClient, url: str, description: str) -> str:
    try:
        response = await client.get(url, follow_redirects=True)
    except httpx.HTTPError as e:
        raise DeclarationFetchError(f"Failed to fetch {description}: {e}") from e
    if not response.is_success:
        raise DeclarationFetchError(
            f"Failed to fetch {description}, the server responded with status code "
            f"{response.status_code}"
        )
    return response.text


async def _fetch_into_folders(
    entries: dict[str, str],
    cached: dict[str, str],
    root_dir: Path,
    description: str,
    client: httpx.AsyncClient,
) -> dict[str, str]:
    async def fetch_one(name: str, url: str) -> None:
        logger.info("Fetching %s %s", description, name)
        text = await _fetch_declaration(client, url, f"{description} {name}")
        target_dir = root_dir / name
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / "index.d.ts").write_text(text, encoding="utf-8")

    changed = [(name, url) for name, url in entries.items() if cached.get(name) != url]
    results = await asyncio.gather(
        *(fetch_one(name, url) for name, url in changed), return_exceptions=True
    )
    # Every fetch has finished by now; report the first failure.
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return dict(entries)


async def fetch_type_roots(
    extra_type_roots: dict[str, str],
    cached: dict[str, str],
    type_roots_dir: Path,
    client: httpx.AsyncClient,
) -> dict[str, str]:
    """Fetch extra type roots whose url changed since the last run.

    Each root is written to ``<type_roots_dir>/<folder>/index.d.ts``.

    Returns:
        The complete folder -> url mapping that is now on disk

    Raises:
        DeclarationFetchError: If any type root cannot be fetched
    """
    return await _fetch_into_folders(
        extra_type_roots, cached, type_roots_dir, "type root", client
    )


async def fetch_exact_type_modules(
    exact_type_modules: dict[str, str],
    cached: dict[str, str],
    exact_types_dir: Path,
    client: httpx.AsyncClient,
) -> dict[str, str]:
    """Fetch declaration files mapped directly to specifiers.

    Each file is written to ``<exact_types_dir>/<specifier>/index.d.ts``.

    Raises:
        DeclarationFetchError: If any declaration cannot be fetched
    """
    return await _fetch_into_folders(
        exact_type_modules, cached, exact_types_dir, "types for", client
    )


def exact_type_module_path(exact_types_dir: Path, specifier: str) -> Path:
    return exact_types_dir / specifier / "index.d.ts"

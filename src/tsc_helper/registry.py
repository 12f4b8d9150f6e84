# SPDX-License-Identifier: MIT
"""Client for npm-style package registries.

Versioned package specifiers (``npm:left-pad@1.0.0`` or ``pkg:left-pad@1.0.0``)
are not vendored from source. Instead the registry metadata of the package is
fetched, and the published tarball is streamed so that the declared types
entry can be placed on disk.
"""

from __future__ import annotations

import posixpath
import tarfile
import tempfile
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import httpx

from .errors import TscHelperError

REGISTRY_SPECIFIER_PREFIXES = ("npm:", "pkg:")


class RegistryError(TscHelperError):
    """Raised when package metadata or contents cannot be fetched."""

    pass


@dataclass(frozen=True)
class RegistrySpecifier:
    """A parsed versioned package specifier.

    Attributes:
        name: Package name, including the scope for scoped packages
        version: Requested version or dist-tag ("latest" when omitted)
        subpath: Path after the package name, without leading slash
    """

    name: str
    version: str = "latest"
    subpath: str = ""


def is_registry_specifier(specifier: str) -> bool:
    """Check if a specifier uses the versioned package form."""
    return specifier.startswith(REGISTRY_SPECIFIER_PREFIXES)


def parse_registry_specifier(specifier: str) -> RegistrySpecifier:
    """Split a versioned package specifier into name, version and subpath.

    Examples:
        ``npm:left-pad@1.0.0`` -> ("left-pad", "1.0.0", "")
        ``npm:@types/node@20/fs`` -> ("@types/node", "20", "fs")

    Raises:
        ValueError: If the specifier is not a versioned package specifier
    """
    for prefix in REGISTRY_SPECIFIER_PREFIXES:
        if specifier.startswith(prefix):
            rest = specifier[len(prefix) :].lstrip("/")
            break
    else:
        raise ValueError(f"Not a package specifier: {specifier!r}")

    if rest.startswith("@"):
        scope, _, rest = rest.partition("/")
        if not scope[1:] or not rest:
            raise ValueError(f"Invalid scoped package specifier: {specifier!r}")
        name_part, _, subpath = rest.partition("/")
        name_part = f"{scope}/{name_part}"
    else:
        name_part, _, subpath = rest.partition("/")

    name, at, version = name_part.rpartition("@")
    if not at or not name or name.endswith("/"):
        name, version = name_part, ""
    if not name:
        raise ValueError(f"Invalid package specifier: {specifier!r}")

    return RegistrySpecifier(name=name, version=version or "latest", subpath=subpath)


def normalize_package_path(path: str) -> str:
    """Normalize a path inside a package (``./lib/index.d.ts`` -> ``lib/index.d.ts``)."""
    normalized = posixpath.normpath(path.replace("\\", "/"))
    return normalized.lstrip("/") if normalized != "." else ""


@dataclass
class RegistryPackage:
    """Registry metadata for one package version."""

    name: str
    version: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def types_entry(self) -> Optional[str]:
        """Normalized path of the declared ``types``/``typings`` entry."""
        entry = self.metadata.get("types") or self.metadata.get("typings")
        if not isinstance(entry, str) or not entry:
            return None
        return normalize_package_path(entry)

    @property
    def tarball_url(self) -> Optional[str]:
        dist = self.metadata.get("dist") or {}
        return dist.get("tarball")

    async def stream_contents(self, client: httpx.AsyncClient) -> AsyncIterator[tuple[str, bytes]]:
        """Yield ``(normalized path, content)`` for every regular file of the package.

        The leading directory that npm tarballs wrap their contents in
        (usually ``package/``) is removed. Entries that would escape the
        package directory are skipped.

        Raises:
            RegistryError: If the package has no tarball or it cannot be read
        """
        tarball_url = self.tarball_url
        if not tarball_url:
            raise RegistryError(f"Registry metadata for {self.name}@{self.version} has no tarball")

        with tempfile.TemporaryFile() as spool:
            try:
                async with client.stream("GET", tarball_url, follow_redirects=True) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes():
                        spool.write(chunk)
            except httpx.HTTPError as e:
                raise RegistryError(f"Failed to download {tarball_url}: {e}") from e
            spool.seek(0)

            try:
                with tarfile.open(fileobj=spool, mode="r|*") as archive:
                    for member in archive:
                        if not member.isfile():
                            continue
                        _, _, inner = member.name.partition("/")
                        path = normalize_package_path(inner or member.name)
                        if not path or path.startswith("../"):
                            continue
                        extracted = archive.extractfile(member)
                        if extracted is None:
                            continue
                        yield path, extracted.read()
            except tarfile.TarError as e:
                raise RegistryError(f"Invalid package tarball at {tarball_url}: {e}") from e


async def fetch_package(
    name: str,
    version: str,
    client: httpx.AsyncClient,
    registry_url: str,
) -> RegistryPackage:
    """Fetch registry metadata for ``name@version``.

    Raises:
        RegistryError: If the registry cannot be reached or does not know
            the package
    """
    url = f"{registry_url.rstrip('/')}/{quote(name, safe='@')}/{quote(version, safe='')}"
    try:
        response = await client.get(url, follow_redirects=True)
        response.raise_for_status()
        metadata = response.json()
    except httpx.HTTPStatusError as e:
        raise RegistryError(
            f"Registry responded with status {e.response.status_code} for {name}@{version}"
        ) from e
    except httpx.HTTPError as e:
        raise RegistryError(f"Failed to fetch registry metadata for {name}@{version}: {e}") from e
    except ValueError as e:
        raise RegistryError(f"Registry returned invalid JSON for {name}@{version}") from e

    if not isinstance(metadata, dict):
        raise RegistryError(f"Registry returned unexpected metadata for {name}@{version}")
    return RegistryPackage(name=name, version=str(metadata.get("version", version)), metadata=metadata)

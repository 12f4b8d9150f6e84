# SPDX-License-Identifier: MIT
"""Pytest configuration and fixtures for tsc-helper tests."""

from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path
from typing import Generator, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from click.testing import CliRunner

from tsc_helper.declarations import RuntimeTypesGenerator


class FakeRemote:
    """In-memory web server for httpx.MockTransport.

    Unknown urls answer with 404. Every request url is recorded.
    """

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, bytes, dict[str, str]]] = {}
        self.requests: list[str] = []

    def add(
        self,
        url: str,
        body: str | bytes = "",
        status: int = 200,
        content_type: str = "application/typescript",
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        data = body.encode("utf-8") if isinstance(body, str) else body
        all_headers = {"content-type": content_type}
        all_headers.update(headers or {})
        self.routes[url] = (status, data, all_headers)

    def add_json(self, url: str, data: object) -> None:
        self.add(url, json.dumps(data), content_type="application/json")

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url not in self.routes:
            return httpx.Response(404, text="not found")
        status, data, headers = self.routes[url]
        return httpx.Response(status, content=data, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, url: str) -> int:
        return self.requests.count(url)


def make_tarball(files: dict[str, str], root: str = "package") -> bytes:
    """Build an npm-style .tgz with every file below ``root/``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        directory = tarfile.TarInfo(root)
        directory.type = tarfile.DIRTYPE
        archive.addfile(directory)
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{root}/{name}")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def remote() -> FakeRemote:
    """Create an empty fake remote."""
    return FakeRemote()


@pytest.fixture(name="make_tarball")
def make_tarball_fixture():
    """Expose make_tarball to tests."""
    return make_tarball


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def runtime_types() -> MagicMock:
    """Runtime declaration generator that never runs a subprocess."""
    generator = MagicMock(spec=RuntimeTypesGenerator)
    generator.version_tag = AsyncMock(return_value="deno 1.46.0")
    generator.generate = AsyncMock(return_value="declare namespace Deno {}\n")
    return generator


@pytest.fixture
def project(tmp_path: Path) -> Generator[Path, None, None]:
    """Create an empty project directory."""
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    yield project_dir

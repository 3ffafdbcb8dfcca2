"""Test harness configuration.

This repo uses a `src/` layout. An older installed `fluxer_channel` package
can shadow the local sources, so tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"

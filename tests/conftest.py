"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Iterable, List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


def sse_delta(text: str) -> str:
    """One ``data:`` line carrying a text delta, as the gateway sends it."""
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return "data: " + json.dumps(payload, ensure_ascii=False) + "\n\n"


def sse_body(fragments: Iterable[str], *, done: bool = True) -> bytes:
    parts: List[str] = [": connected\n\n"]
    parts.extend(sse_delta(f) for f in fragments)
    if done:
        parts.append("data: [DONE]\n\n")
    return "".join(parts).encode("utf-8")


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    return project_root / "config" / "default.yaml"


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for the message store during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var.startswith("PLUG_CHAT") or var == "LOVABLE_API_KEY":
            monkeypatch.delenv(var, raising=False)
    yield

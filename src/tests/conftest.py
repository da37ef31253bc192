from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("RAG_RESULT_DB_URI", None)
os.environ.setdefault("RAG_VECTORSTORE", "memory")
os.environ.setdefault("EMBEDDING_PROVIDER", "hash")
os.environ.setdefault("RAG_BACKGROUND_TASKS", "false")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import pytest


_DB_DEPENDENT_SUFFIXES = ("_postgres.py",)


def _db_enabled() -> bool:
    flag = os.getenv("CHARTFLOW_PYTEST_DB") or os.getenv("PYTEST_DB")
    if flag:
        return flag.strip().lower() in {"1", "true", "yes", "on"}
    return False


def pytest_ignore_collect(collection_path: Path, config: pytest.Config) -> Optional[bool]:  # type: ignore[override]
    if _db_enabled():
        return None
    if collection_path.name.endswith(_DB_DEPENDENT_SUFFIXES):
        return True
    return None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "requires_db: marks tests that need PostgreSQL (enable with CHARTFLOW_PYTEST_DB=1)",
    )

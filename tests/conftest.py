from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from shipline.ui.console import Console, set_console  # noqa: E402


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield


@pytest.fixture
def workspace(tmp_path):
    """repo root + store/work/deploy dirs for one test."""
    repo = tmp_path / "repo"
    repo.mkdir()
    return {
        "repo_root": repo,
        "store_root": tmp_path / "store",
        "work_root": tmp_path / "work",
        "deploy_root": tmp_path / "deploy",
    }

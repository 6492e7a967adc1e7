"""
Pytest configuration and fixtures for plan-info verification tests.
"""

import tempfile
from pathlib import Path

import pytest

from fakes import FakeSession

from planinfo import UpgradeDownloader


@pytest.fixture
def session():
    """Fake HTTP session with no routes."""
    return FakeSession()


@pytest.fixture
def downloader(session):
    """Downloader wired to the fake session."""
    return UpgradeDownloader(connect_timeout=1.0, read_timeout=2.0, session=session)


@pytest.fixture
def scratch_root(tmp_path, monkeypatch) -> Path:
    """Redirect temporary directories so scratch cleanup can be observed."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root

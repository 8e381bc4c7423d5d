#!/usr/bin/env python3
"""
Pytest configuration and fixtures.
"""

import sys
import pathlib

import pytest

# Add backend directory to path so we can import the modules
sys.path.insert(0, str(pathlib.Path(__file__).parent.parent / "backend"))

from store_builders import make_store  # noqa: E402


@pytest.fixture
def store_factory(tmp_path):
    """Build a cursorDiskKV store under tmp_path from a {key: value} dict."""
    def _factory(records, name="state.vscdb"):
        return make_store(tmp_path / name, records)
    return _factory

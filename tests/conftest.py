"""Shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path (tests/ -> project root)
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from services.settings import EditorSettings, Settings, TranslatorSettings
from xlsx_factory import build_xlsx, quote_workbook


@pytest.fixture
def xlsx_builder():
    return build_xlsx


@pytest.fixture
def quote_xlsx() -> bytes:
    return quote_workbook()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        translator=TranslatorSettings(timeout_seconds=0.5, max_snapshot_cells=100),
        editor=EditorSettings(history_limit=10, preview_rows=50),
    )

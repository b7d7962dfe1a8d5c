"""Tests for the project metadata in pyproject.toml."""

from __future__ import annotations

from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


class TestProjectMetadata:
    def test_long_description_is_not_a_design_document(self):
        project = tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))["project"]
        assert project.get("readme") in (None, "README.md")

    def test_console_script_points_at_cli(self):
        project = tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))["project"]
        assert project["scripts"]["memorybook"] == "memorybook.cli:app"

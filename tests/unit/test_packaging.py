from __future__ import annotations

from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")

ROOT = Path(__file__).resolve().parents[2]


def _requirement_names(reqs):
    names = set()
    for r in reqs:
        for sep in ("[", ">", "<", "=", "~", "!", ";", " "):
            r = r.split(sep, 1)[0]
        names.add(r.lower())
    return names


def test_default_dispatch_runs_with_core_dependencies():
    project = tomllib.loads((ROOT / "pyproject.toml").read_text(encoding="utf-8"))["project"]
    core = _requirement_names(project["dependencies"])

    # dispatch=inprocess builds PaddleTextExtractor inside the API process
    assert {"paddleocr", "paddlepaddle", "filelock"} <= core
    assert "ocr" not in project.get("optional-dependencies", {})

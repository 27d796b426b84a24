import re
from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")

ROOT = Path(__file__).resolve().parents[1]


def _declared():
    with open(ROOT / "pyproject.toml", "rb") as f:
        project = tomllib.load(f)["project"]
    return {re.split(r"[<>=!~\[ ]", dep, maxsplit=1)[0].lower() for dep in project["dependencies"]}


def test_direct_imports_are_declared():
    declared = _declared()
    for name in ("sqlalchemy", "python-dotenv", "click", "pdfplumber", "pillow",
                 "supabase", "tenacity", "fastapi", "pydantic", "uvicorn"):
        assert name in declared, name

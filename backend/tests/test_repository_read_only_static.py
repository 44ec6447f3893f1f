from __future__ import annotations

import ast
from pathlib import Path


ROOT = Path(__file__).resolve().parents[2]
REPO_DIR = ROOT / "backend" / "app" / "repositories"

# Write paths live in derive/core, ingestion/core and audit/core only.
FORBIDDEN_SUBSTRINGS = [
    ".commit(",
    ".add(",
    ".delete(",
    ".flush(",
    ".merge(",
    "begin_nested(",
    "insert(",
    "update(",
    "delete(",
    "on_conflict",
]


def _repository_files() -> list[Path]:
    files = list(REPO_DIR.glob("**/*.py"))
    assert files, "No repository files found."
    return files


def test_repository_code_has_no_obvious_writes():
    offenders: list[str] = []
    for f in _repository_files():
        txt = f.read_text(encoding="utf-8", errors="ignore")
        for s in FORBIDDEN_SUBSTRINGS:
            if s in txt:
                offenders.append(f"{f.relative_to(ROOT)} contains {s!r}")

    assert not offenders, "Read-only repository violations:\n" + "\n".join(offenders)


def test_repositories_only_execute_through_guard():
    offenders: list[str] = []
    for f in _repository_files():
        if f.name == "base.py":
            continue
        tree = ast.parse(f.read_text(encoding="utf-8"))
        for node in ast.walk(tree):
            if isinstance(node, ast.Attribute) and node.attr == "execute":
                offenders.append(f"{f.relative_to(ROOT)}:{node.lineno} calls .execute directly")

    assert not offenders, "\n".join(offenders)

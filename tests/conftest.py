"""Shared test fixtures for devclean tests."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from devclean.scanner import ProjectMeta

DAY = 86400


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep the data dir, quarantine and AI key out of the real home directory."""
    data = tmp_path / "_data"
    monkeypatch.setenv("DEVCLEAN_DATA_DIR", str(data))
    monkeypatch.delenv("DEVCLEAN_QUARANTINE_DIR", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_MODEL", raising=False)
    return data


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = (tmp_path / "ws").resolve()
    root.mkdir()
    return root


def set_age(path: Path, days: float) -> None:
    """Backdate every file under ``path`` (and the path itself)."""
    ts = time.time() - days * DAY
    for dirpath, dirnames, filenames in os.walk(path):
        for name in filenames + dirnames:
            os.utime(os.path.join(dirpath, name), (ts, ts))
    os.utime(path, (ts, ts))


@pytest.fixture
def make_project(workspace: Path) -> Callable[..., Path]:
    """Factory creating a project directory with a ``package.json``."""

    def _make(
        rel: str,
        manifest: dict[str, Any] | str | None = None,
        *,
        git: bool = False,
        env_file: bool = False,
        node_modules: bool = False,
        files: dict[str, str] | None = None,
        age_days: float | None = None,
    ) -> Path:
        project = workspace / rel
        project.mkdir(parents=True, exist_ok=True)
        if manifest is None:
            manifest = {"name": project.name}
        text = manifest if isinstance(manifest, str) else json.dumps(manifest)
        (project / "package.json").write_text(text, encoding="utf-8")
        if git:
            (project / ".git").mkdir()
        if env_file:
            (project / ".env.local").write_text("TOKEN=x\n", encoding="utf-8")
        if node_modules:
            pkg = project / "node_modules" / "left-pad"
            pkg.mkdir(parents=True)
            (pkg / "index.js").write_text("module.exports = 1;\n" * 200, encoding="utf-8")
        for name, body in (files or {}).items():
            target = project / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(body, encoding="utf-8")
        if age_days is not None:
            set_age(project, age_days)
        return project

    return _make


@pytest.fixture
def meta() -> Callable[..., ProjectMeta]:
    """Factory for in-memory ProjectMeta records."""

    def _meta(**overrides: Any) -> ProjectMeta:
        values: dict[str, Any] = {
            "id": "/work/app",
            "path": "/work/app",
            "name": "app",
            "manifest_path": "/work/app/package.json",
            "last_modified_days": 90,
        }
        values.update(overrides)
        return ProjectMeta(**values)

    return _meta

"""Tests for project discovery and per-project inspection."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from devclean.scanner import (
    ProjectScanner,
    ScanOptions,
    ScanRootError,
    dependency_count,
    directory_size,
    discover_cache_dirs,
    has_env_file,
    parse_manifest,
    scan_projects,
)

posix_only = pytest.mark.skipif(os.name == "nt" or sys.platform == "darwin", reason="XDG layout only")


def test_finds_nested_projects_and_prunes_skip_dirs(make_project, workspace):
    make_project("shop", node_modules=True)
    make_project("clients/portal")
    make_project("shop/dist/bundle")
    # a manifest inside node_modules must never become a project
    (workspace / "shop" / "node_modules" / "left-pad" / "package.json").write_text('{"name": "left-pad"}')

    projects = scan_projects(str(workspace), ScanOptions(max_workers=2))

    assert sorted(p.name for p in projects) == ["portal", "shop"]
    assert [p.path for p in projects] == sorted(p.path for p in projects)
    for p in projects:
        assert p.manifest_path == os.path.join(p.path, "package.json")
        assert p.id == p.path
        assert not p.is_cache_dir


def test_manifest_name_wins_over_directory_name(make_project, workspace):
    make_project("folder", {"name": "real-name"})
    (project,) = scan_projects(str(workspace))
    assert project.name == "real-name"


def test_malformed_manifest_still_yields_project(make_project, workspace):
    make_project("broken", "{ this is not json")
    (project,) = scan_projects(str(workspace))
    assert project.name == "broken"
    assert project.dependency_count == 0
    assert project.has_startup_keyword is False


def test_signals_are_detected(make_project, workspace):
    make_project(
        "api",
        {
            "name": "api",
            "scripts": {"start": "NODE_ENV=production node server.js"},
            "dependencies": {"express": "^4"},
            "devDependencies": {"jest": "^29", "eslint": "^8"},
            "peerDependencies": {"react": "*"},
        },
        git=True,
        env_file=True,
    )
    (project,) = scan_projects(str(workspace))
    assert project.has_vcs_marker
    assert project.has_env_file
    assert project.has_startup_keyword
    assert project.dependency_count == 4
    assert project.size_bytes > 0


def test_recency_uses_backdated_files(make_project, workspace):
    make_project("old", files={"src/index.js": "console.log(1)\n"}, age_days=200)
    (project,) = scan_projects(str(workspace))
    assert 199 <= project.last_modified_days <= 201


def test_scan_all_skips_system_prefixes(make_project, workspace):
    make_project("apps/site")
    make_project("sysroot/hidden")
    options = ScanOptions(
        scan_all=True,
        volume_root=str(workspace),
        system_dir_names=("sysroot",),
    )
    projects = scan_projects(str(workspace / "apps"), options)
    assert [p.name for p in projects] == ["site"]


def test_missing_root_raises_scan_root_error(workspace):
    with pytest.raises(ScanRootError):
        scan_projects(str(workspace / "nope"))


def test_failing_progress_sink_does_not_abort_scan(make_project, workspace):
    make_project("one")
    make_project("two")
    events = []

    def sink(event):
        events.append(event)
        raise RuntimeError("ui went away")

    scanner = ProjectScanner(ScanOptions(max_workers=1))
    projects = scanner.scan(str(workspace), sink)

    assert len(projects) == 2
    assert events, "at least the final progress event is emitted"
    final = events[-1]
    assert final.found_count == 2
    assert final.total_count == final.scanned_count == scanner.scanned_entries


def test_parse_manifest_edge_cases():
    assert parse_manifest(b"[]").parsed is False
    facts = parse_manifest('{"name": "  ", "keywords": ["prod", 3], "scripts": {"a": 1}}')
    assert facts.parsed
    assert facts.name is None
    assert facts.keywords == ["prod"]
    assert facts.scripts == []


def test_dependency_count_ignores_non_objects():
    assert dependency_count({"dependencies": ["a"], "optionalDependencies": {"b": "1"}}) == 1


def test_env_file_must_be_a_file(tmp_path):
    (tmp_path / ".env").mkdir()
    assert has_env_file(str(tmp_path)) is False
    (tmp_path / ".env.production").write_text("X=1")
    assert has_env_file(str(tmp_path)) is True


def test_directory_size_counts_bytes(tmp_path):
    (tmp_path / "blob.bin").write_bytes(b"x" * 10000)
    assert directory_size(str(tmp_path)) >= 10000


@posix_only
def test_cache_dirs_are_discovered_and_scored_as_cache(tmp_path, monkeypatch, workspace):
    home = tmp_path / "home"
    (home / ".npm" / "_cacache").mkdir(parents=True)
    (home / ".npm" / "_cacache" / "blob").write_bytes(b"y" * 4096)
    xdg = home / "xdg-cache"
    (xdg / "some-tool").mkdir(parents=True)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CACHE_HOME", str(xdg))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / "xdg-data"))
    for var in ("NPM_CONFIG_CACHE", "YARN_CACHE_FOLDER", "PNPM_STORE_PATH"):
        monkeypatch.delenv(var, raising=False)

    found = {p.path: p for p in discover_cache_dirs()}
    assert set(found) == {str(home / ".npm"), str(xdg / "some-tool")}
    assert all(p.is_cache_dir and p.manifest_path == "" for p in found.values())

    projects = scan_projects(str(workspace), ScanOptions(include_cache_dirs=True, max_workers=2))
    npm = next(p for p in projects if p.path == str(home / ".npm"))
    assert npm.size_bytes >= 4096
    assert npm.name.startswith("npm cache")


def test_unreadable_subdirectory_is_skipped(make_project, workspace, monkeypatch):
    make_project("visible")
    make_project("blocked/inner")
    blocked = str(workspace / "blocked")
    real_scandir = os.scandir

    def scandir(path="."):
        if os.fspath(path) == blocked:
            raise PermissionError(13, "Permission denied", blocked)
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", scandir)

    scanner = ProjectScanner(ScanOptions(max_workers=1))
    projects = scanner.scan(str(workspace))

    assert [p.name for p in projects] == ["visible"]
    assert scanner.skipped_entries == 1


def test_unreadable_manifest_skips_only_that_project(make_project, workspace, monkeypatch):
    make_project("good")
    bad = make_project("bad")
    bad_manifest = bad / "package.json"
    real_read_bytes = Path.read_bytes

    def read_bytes(self):
        if self == bad_manifest:
            raise PermissionError(13, "Permission denied", str(self))
        return real_read_bytes(self)

    monkeypatch.setattr(Path, "read_bytes", read_bytes)

    projects = scan_projects(str(workspace), ScanOptions(max_workers=2))

    assert [p.name for p in projects] == ["good"]

"""Project discovery for devclean.

Walks a root directory looking for ``package.json`` manifests and turns each
one into a :class:`ProjectMeta` record:

- iterative ``os.scandir`` walk with a fixed skip list pruned before descent
- full-volume mode with platform system directories pruned as prefixes
- best-effort manifest parsing (malformed JSON never fails the scan)
- shallow recency sampling and ``du``-first folder sizing
- optional discovery of package-manager cache directories

Per-project work runs on a bounded thread pool. Only a failure to open the
scan root is fatal; every other I/O error is counted and skipped.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import json
import logging
import os
import shutil
import sys
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from devclean.common import MANIFEST_NAME, days_since, default_max_workers, get_logger, run_command

# ------------------------------- Constants ---------------------------------- #

SKIP_DIR_NAMES = frozenset({
    "node_modules",
    "bower_components",
    "dist",
    "build",
    "out",
    ".git",
    ".hg",
    ".svn",
    ".next",
    ".nuxt",
    ".svelte-kit",
    ".turbo",
    ".parcel-cache",
    ".cache",
    "coverage",
    ".nyc_output",
})

SYSTEM_DIR_NAMES_POSIX = (
    "proc",
    "dev",
    "sys",
    "run",
    "tmp",
    "System",
    "Library",
    "Applications",
    "private",
    "Volumes",
    "usr",
    "bin",
    "sbin",
    "lib",
    "lib64",
    "boot",
    "etc",
    "snap",
)

SYSTEM_DIR_NAMES_WINDOWS = (
    "Windows",
    "Program Files",
    "Program Files (x86)",
    "ProgramData",
    "$Recycle.Bin",
    "System Volume Information",
)

DEPENDENCY_FIELDS = (
    "dependencies",
    "devDependencies",
    "peerDependencies",
    "optionalDependencies",
)

STARTUP_KEYWORDS = ("startup", "production", "prod")

RECENCY_EXTENSIONS = frozenset({
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".json", ".md",
    ".vue", ".svelte", ".css", ".scss", ".html",
})

PROGRESS_EVERY_ENTRIES = 200
PROGRESS_INTERVAL_SEC = 0.12


def platform_system_dir_names() -> tuple[str, ...]:
    return SYSTEM_DIR_NAMES_WINDOWS if os.name == "nt" else SYSTEM_DIR_NAMES_POSIX


# ------------------------------ Data Models --------------------------------- #


class ScanRootError(ValueError):
    """Raised when the scan root cannot be accessed. Fatal for that scan only."""


@dataclasses.dataclass(slots=True)
class ScanOptions:
    scan_all: bool = False
    include_cache_dirs: bool = False
    max_workers: int = dataclasses.field(default_factory=default_max_workers)
    recency_depth: int = 2
    recency_sample_limit: int = 400
    # Volume walked when scan_all is set; defaults to the anchor of the root.
    volume_root: str | None = None
    system_dir_names: tuple[str, ...] = dataclasses.field(default_factory=platform_system_dir_names)


@dataclasses.dataclass(slots=True)
class ScanProgress:
    found_count: int
    current_path: str
    scanned_count: int
    total_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


ProgressSink = Callable[[ScanProgress], None]


@dataclasses.dataclass(slots=True)
class ManifestFacts:
    """Best-effort view of a manifest. The default instance is the safe empty result."""

    parsed: bool = False
    name: str | None = None
    keywords: list[str] = dataclasses.field(default_factory=list)
    scripts: list[str] = dataclasses.field(default_factory=list)
    dependency_count: int = 0


@dataclasses.dataclass(slots=True)
class ProjectMeta:
    id: str
    path: str
    name: str
    manifest_path: str
    dependency_count: int = 0
    has_vcs_marker: bool = False
    has_env_file: bool = False
    has_startup_keyword: bool = False
    last_modified: float = 0.0
    last_modified_days: int = 0
    size_bytes: int = 0
    is_cache_dir: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(slots=True)
class CacheCandidate:
    path: Path
    label: str
    expand_children: bool = False


# --------------------------- Manifest Inspection ---------------------------- #


def parse_manifest(raw: bytes | str) -> ManifestFacts:
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        return ManifestFacts()
    if not isinstance(data, dict):
        return ManifestFacts()

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        name = None

    keywords_field = data.get("keywords")
    keywords = [k for k in keywords_field if isinstance(k, str)] if isinstance(keywords_field, list) else []

    scripts_field = data.get("scripts")
    scripts = [v for v in scripts_field.values() if isinstance(v, str)] if isinstance(scripts_field, dict) else []

    return ManifestFacts(
        parsed=True,
        name=name,
        keywords=keywords,
        scripts=scripts,
        dependency_count=dependency_count(data),
    )


def dependency_count(manifest: Mapping[str, Any]) -> int:
    total = 0
    for key in DEPENDENCY_FIELDS:
        bucket = manifest.get(key)
        if isinstance(bucket, dict):
            total += len(bucket)
    return total


def has_startup_signal(facts: ManifestFacts, name: str) -> bool:
    keyword_text = " ".join(facts.keywords).lower()
    scripts_text = " ".join(facts.scripts).lower()
    name_text = name.lower()
    return any(
        kw in keyword_text or kw in scripts_text or kw in name_text
        for kw in STARTUP_KEYWORDS
    )


def has_env_file(project_dir: str) -> bool:
    try:
        with os.scandir(project_dir) as it:
            for entry in it:
                if not entry.name.startswith(".env"):
                    continue
                try:
                    if entry.is_file():
                        return True
                except OSError:
                    continue
    except OSError:
        return False
    return False


def latest_source_mtime(project_dir: str, manifest_path: str, depth: int = 2, limit: int = 400) -> float:
    """Newest mtime among source-like files near the project root.

    Only ``depth`` directory levels are sampled (the project dir is level 1)
    and at most ``limit`` files are stat'ed. Falls back to the manifest mtime.
    """
    latest = 0.0
    sampled = 0
    stack: list[tuple[str, int]] = [(project_dir, 1)]

    while stack and sampled < limit:
        current, level = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            if level < depth and entry.name not in SKIP_DIR_NAMES:
                                stack.append((entry.path, level + 1))
                            continue
                        if not entry.is_file(follow_symlinks=False):
                            continue
                        if os.path.splitext(entry.name)[1].lower() not in RECENCY_EXTENSIONS:
                            continue
                        mtime = entry.stat(follow_symlinks=False).st_mtime
                    except OSError:
                        continue
                    sampled += 1
                    latest = max(latest, mtime)
                    if sampled >= limit:
                        break
        except OSError:
            continue

    if sampled and latest > 0:
        return latest
    try:
        return os.stat(manifest_path).st_mtime
    except OSError:
        return 0.0


# ------------------------------- Sizing ------------------------------------- #


def directory_size(path: str) -> int:
    """Bytes used under ``path``; ``du -sk`` first, manual walk as fallback."""
    if os.name != "nt" and shutil.which("du"):
        # du exits non-zero on unreadable subtrees but still prints a total.
        _, out, _ = run_command(["du", "-sk", path], timeout=300)
        head = out.strip().split(maxsplit=1)
        if head and head[0].isdigit():
            return int(head[0]) * 1024
    return manual_directory_size(path)


def manual_directory_size(path: str) -> int:
    try:
        st = os.lstat(path)
    except OSError:
        return 0
    if not os.path.isdir(path) or os.path.islink(path):
        return int(st.st_size)

    total = 0
    stack = [path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(entry.path)
                        elif entry.is_file(follow_symlinks=False):
                            total += int(entry.stat(follow_symlinks=False).st_size)
                    except OSError:
                        continue
        except OSError:
            continue
    return total


# --------------------------- Cache Directories ------------------------------ #


def user_cache_dir(env: Mapping[str, str] | None = None) -> Path | None:
    env = os.environ if env is None else env
    if os.name == "nt":
        local = env.get("LOCALAPPDATA")
        return Path(local) if local else None
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches"
    xdg = env.get("XDG_CACHE_HOME")
    return Path(xdg) if xdg else Path.home() / ".cache"


def user_data_dir(env: Mapping[str, str] | None = None) -> Path | None:
    env = os.environ if env is None else env
    if os.name == "nt":
        roaming = env.get("APPDATA")
        return Path(roaming) if roaming else None
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    xdg = env.get("XDG_DATA_HOME")
    return Path(xdg) if xdg else Path.home() / ".local" / "share"


def gather_cache_candidates(env: Mapping[str, str] | None = None) -> list[CacheCandidate]:
    env = os.environ if env is None else env
    home = Path.home()
    candidates: list[CacheCandidate] = []

    system_cache = user_cache_dir(env)
    if system_cache is not None:
        candidates.append(CacheCandidate(system_cache, "System cache", expand_children=True))

    candidates.extend([
        CacheCandidate(home / ".npm", "npm cache"),
        CacheCandidate(home / ".yarn" / "cache", "yarn cache"),
        CacheCandidate(home / ".yarn", "yarn data"),
        CacheCandidate(home / ".pnpm-store", "pnpm store"),
        CacheCandidate(home / ".cache" / "yarn", "yarn cache"),
        CacheCandidate(home / ".cache" / "npm", "npm cache"),
    ])

    data = user_data_dir(env)
    if data is not None:
        candidates.append(CacheCandidate(data / "pnpm" / "store", "pnpm store"))

    for var, label in (
        ("NPM_CONFIG_CACHE", "npm cache"),
        ("YARN_CACHE_FOLDER", "yarn cache"),
        ("PNPM_STORE_PATH", "pnpm store"),
    ):
        value = env.get(var, "").strip()
        if value:
            candidates.append(CacheCandidate(Path(value).expanduser(), label))

    return candidates


def _cache_meta(path: str, label: str) -> ProjectMeta:
    try:
        last_modified = os.stat(path).st_mtime
    except OSError:
        last_modified = 0.0
    return ProjectMeta(
        id=path,
        path=path,
        name=f"{label} - {os.path.basename(path) or path}",
        manifest_path="",
        last_modified=last_modified,
        last_modified_days=days_since(last_modified),
        is_cache_dir=True,
    )


def discover_cache_dirs(env: Mapping[str, str] | None = None) -> list[ProjectMeta]:
    """Existing package-manager/user cache directories, sizes not yet filled in."""
    found: list[ProjectMeta] = []
    seen: set[str] = set()

    for candidate in gather_cache_candidates(env):
        base = str(candidate.path)
        if not os.path.isdir(base):
            continue

        if candidate.expand_children:
            try:
                with os.scandir(base) as it:
                    children = [e.path for e in it if e.is_dir(follow_symlinks=False)]
            except OSError:
                continue
            for child in sorted(children):
                if child in seen:
                    continue
                seen.add(child)
                found.append(_cache_meta(child, candidate.label))
            continue

        if base in seen:
            continue
        seen.add(base)
        found.append(_cache_meta(base, candidate.label))

    return found


# -------------------------------- Scanner ----------------------------------- #


class ProjectScanner:
    """Manifest walk plus bounded-concurrency per-project inspection."""

    def __init__(self, options: ScanOptions | None = None, logger: logging.Logger | None = None):
        self.options = options or ScanOptions()
        self.logger = logger or get_logger()
        self.scanned_entries = 0
        self.skipped_entries = 0

    def resolve_walk_root(self, root: str) -> str:
        root_abs = os.path.realpath(os.path.expanduser(root))
        if not self.options.scan_all:
            return root_abs
        if self.options.volume_root:
            return os.path.realpath(os.path.expanduser(self.options.volume_root))
        return Path(root_abs).anchor or root_abs

    def system_prefixes(self, walk_root: str) -> set[str]:
        if not self.options.scan_all:
            return set()
        return {os.path.normcase(os.path.join(walk_root, name)) for name in self.options.system_dir_names}

    def scan(self, root: str, progress: ProgressSink | None = None) -> list[ProjectMeta]:
        walk_root = self.resolve_walk_root(root)
        manifests = self.find_manifests(walk_root, progress)

        workers = max(1, self.options.max_workers)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
            projects = [p for p in ex.map(self._safe_inspect, manifests) if p is not None]

            if self.options.include_cache_dirs:
                cache_dirs = discover_cache_dirs()
                sizes = ex.map(directory_size, [c.path for c in cache_dirs])
                for meta, size in zip(cache_dirs, sizes):
                    meta.size_bytes = size
                known = {p.id for p in projects}
                projects.extend(c for c in cache_dirs if c.id not in known)

        projects.sort(key=lambda p: p.path)
        self.logger.info(
            "scan_walk_complete root=%s manifests=%s projects=%s scanned=%s skipped=%s",
            walk_root, len(manifests), len(projects), self.scanned_entries, self.skipped_entries,
        )
        return projects

    def find_manifests(self, walk_root: str, progress: ProgressSink | None = None) -> list[str]:
        self.scanned_entries = 0
        self.skipped_entries = 0

        if not os.path.isdir(walk_root):
            raise ScanRootError(f"Scan root is not an accessible directory: {walk_root}")
        try:
            with os.scandir(walk_root):
                pass
        except OSError as exc:
            raise ScanRootError(f"Scan root cannot be read: {walk_root} ({exc})") from exc

        prefixes = self.system_prefixes(walk_root)
        manifests: list[str] = []
        last_emit = time.monotonic()
        stack = [walk_root]

        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    for entry in it:
                        self.scanned_entries += 1
                        try:
                            is_dir = entry.is_dir(follow_symlinks=False)
                            is_file = not is_dir and entry.is_file(follow_symlinks=False)
                        except OSError:
                            self.skipped_entries += 1
                            continue

                        if is_dir:
                            if entry.name in SKIP_DIR_NAMES:
                                continue
                            if prefixes and os.path.normcase(entry.path) in prefixes:
                                continue
                            stack.append(entry.path)
                        elif is_file and entry.name == MANIFEST_NAME:
                            manifests.append(entry.path)

                        if progress is not None and (
                            self.scanned_entries % PROGRESS_EVERY_ENTRIES == 0
                            or time.monotonic() - last_emit >= PROGRESS_INTERVAL_SEC
                        ):
                            last_emit = time.monotonic()
                            self._emit(progress, ScanProgress(len(manifests), entry.path, self.scanned_entries))
            except OSError as exc:
                self.skipped_entries += 1
                self.logger.debug("scan_dir_skipped path=%s err=%s", current, exc)

        if progress is not None:
            self._emit(progress, ScanProgress(len(manifests), walk_root, self.scanned_entries, self.scanned_entries))
        return manifests

    def inspect_project(self, manifest_path: str) -> ProjectMeta | None:
        project_dir = os.path.dirname(manifest_path)
        try:
            raw = Path(manifest_path).read_bytes()
        except OSError as exc:
            self.logger.debug("manifest_unreadable path=%s err=%s", manifest_path, exc)
            return None

        facts = parse_manifest(raw)
        if not facts.parsed:
            self.logger.debug("manifest_malformed path=%s", manifest_path)
        name = facts.name or os.path.basename(project_dir)
        last_modified = latest_source_mtime(
            project_dir,
            manifest_path,
            depth=self.options.recency_depth,
            limit=self.options.recency_sample_limit,
        )

        return ProjectMeta(
            id=project_dir,
            path=project_dir,
            name=name,
            manifest_path=manifest_path,
            dependency_count=facts.dependency_count,
            has_vcs_marker=os.path.exists(os.path.join(project_dir, ".git")),
            has_env_file=has_env_file(project_dir),
            has_startup_keyword=has_startup_signal(facts, name),
            last_modified=last_modified,
            last_modified_days=days_since(last_modified),
            size_bytes=directory_size(project_dir),
        )

    def _safe_inspect(self, manifest_path: str) -> ProjectMeta | None:
        try:
            return self.inspect_project(manifest_path)
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.warning("project_inspect_failed path=%s err=%s", manifest_path, exc)
            return None

    def _emit(self, progress: ProgressSink, event: ScanProgress) -> None:
        try:
            progress(event)
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.debug("progress_sink_failed err=%s", exc)


def scan_projects(
    root: str,
    options: ScanOptions | None = None,
    progress: ProgressSink | None = None,
) -> list[ProjectMeta]:
    return ProjectScanner(options).scan(root, progress)


__all__ = [
    "ManifestFacts",
    "ProjectMeta",
    "ProjectScanner",
    "ScanOptions",
    "ScanProgress",
    "ScanRootError",
    "SKIP_DIR_NAMES",
    "directory_size",
    "discover_cache_dirs",
    "latest_source_mtime",
    "parse_manifest",
    "scan_projects",
]

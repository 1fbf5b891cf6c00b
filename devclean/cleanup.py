"""Guarded deletion: plan building, execution, quarantine and restore.

The engine never discovers targets on its own. It trusts the caller's list,
never touches the filesystem when ``dry_run`` is set, and in deps-only mode
restricts itself to a fixed set of dependency/build-cache subdirectories.
Items succeed or fail independently; there is no rollback across items.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Iterable, Sequence, Union

from devclean.common import default_quarantine_dir, get_logger, human_bytes
from devclean.scanner import ProjectMeta, directory_size

ACTION_PROJECT_ROOT = "project root"
ACTION_DEPENDENCY_DIR = "dependency directory"
ACTION_BUILD_CACHE_DIR = "build cache directory"
ACTION_CACHE_DIR = "cache directory"

# Subdirectories eligible in deps-only mode, in plan order.
DEPENDENCY_SUBDIRS: tuple[tuple[str, str], ...] = (
    ("node_modules", ACTION_DEPENDENCY_DIR),
    (".cache", ACTION_BUILD_CACHE_DIR),
    (".next", ACTION_BUILD_CACHE_DIR),
    (".turbo", ACTION_BUILD_CACHE_DIR),
    (".parcel-cache", ACTION_BUILD_CACHE_DIR),
)

STATUS_PLANNED = "planned"
STATUS_DELETED = "deleted"
STATUS_MOVED = "moved"
STATUS_ERROR_PREFIX = "error:"


@dataclasses.dataclass(slots=True)
class DeleteOptions:
    deps_only: bool = False
    dry_run: bool = True
    quarantine: bool = True


@dataclasses.dataclass(slots=True)
class DeleteTarget:
    path: str
    is_cache_dir: bool = False

    @classmethod
    def from_project(cls, project: ProjectMeta) -> "DeleteTarget":
        return cls(path=project.path, is_cache_dir=project.is_cache_dir)


@dataclasses.dataclass(slots=True)
class DeleteItem:
    path: str
    size_bytes: int
    action: str
    status: str = STATUS_PLANNED
    destination: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (STATUS_DELETED, STATUS_MOVED)

    @property
    def failed(self) -> bool:
        return self.status.startswith(STATUS_ERROR_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(slots=True)
class DeleteResult:
    removed_count: int
    reclaimed_bytes: int
    planned_bytes: int
    dry_run: bool
    quarantine: bool
    items: list[DeleteItem]

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed_count": self.removed_count,
            "reclaimed_bytes": self.reclaimed_bytes,
            "reclaimed_human": human_bytes(self.reclaimed_bytes),
            "planned_bytes": self.planned_bytes,
            "dry_run": self.dry_run,
            "quarantine": self.quarantine,
            "failed_count": sum(1 for i in self.items if i.failed),
            "items": [i.to_dict() for i in self.items],
        }


TargetLike = Union[str, DeleteTarget, ProjectMeta]


def as_target(value: TargetLike) -> DeleteTarget:
    if isinstance(value, DeleteTarget):
        return value
    if isinstance(value, ProjectMeta):
        return DeleteTarget.from_project(value)
    return DeleteTarget(path=str(value))


def error_status(exc: BaseException | str) -> str:
    if isinstance(exc, FileNotFoundError):
        reason = "path not found"
    elif isinstance(exc, PermissionError):
        reason = "permission denied"
    elif isinstance(exc, BaseException):
        reason = exc.strerror if isinstance(exc, OSError) and exc.strerror else str(exc) or exc.__class__.__name__
    else:
        reason = exc
    return f"{STATUS_ERROR_PREFIX}{reason}"


def is_dependency_item(item: DeleteItem) -> bool:
    """True for items deps-only mode may touch: cache dirs or a known project subdirectory."""
    if item.action == ACTION_CACHE_DIR:
        return True
    name = os.path.basename(os.path.normpath(item.path))
    return any(name == sub and item.action == action for sub, action in DEPENDENCY_SUBDIRS)


class DeletionEngine:
    """Stateless planner/executor; every call is independent of the previous one."""

    def __init__(self, quarantine_dir: Path | None = None, logger: logging.Logger | None = None):
        self.quarantine_dir = Path(quarantine_dir) if quarantine_dir else default_quarantine_dir()
        self.logger = logger or get_logger()

    # ------------------------------ Planning ------------------------------- #

    def build_plan(self, targets: Iterable[TargetLike], options: DeleteOptions) -> list[DeleteItem]:
        items: list[DeleteItem] = []
        seen: set[str] = set()

        for raw in targets:
            target = as_target(raw)
            root = os.path.abspath(os.path.expanduser(target.path))

            if options.deps_only and not target.is_cache_dir:
                for name, action in DEPENDENCY_SUBDIRS:
                    candidate = os.path.join(root, name)
                    if not os.path.isdir(candidate) or candidate in seen:
                        continue
                    seen.add(candidate)
                    items.append(DeleteItem(path=candidate, size_bytes=directory_size(candidate), action=action))
                continue

            if not os.path.lexists(root):
                self.logger.info("plan_target_missing path=%s", root)
                continue
            if root in seen:
                continue
            seen.add(root)
            action = ACTION_CACHE_DIR if target.is_cache_dir else ACTION_PROJECT_ROOT
            items.append(DeleteItem(path=root, size_bytes=directory_size(root), action=action))

        return items

    # ------------------------------ Execution ------------------------------ #

    def execute(
        self,
        plan_or_targets: Sequence[DeleteItem] | Iterable[TargetLike],
        options: DeleteOptions,
    ) -> DeleteResult:
        entries = list(plan_or_targets)
        # Fresh copies: an item is never reused across runs.
        items = [
            DeleteItem(path=e.path, size_bytes=e.size_bytes, action=e.action)
            for e in entries if isinstance(e, DeleteItem)
        ]
        targets = [e for e in entries if not isinstance(e, DeleteItem)]
        if targets:
            known = {i.path for i in items}
            items.extend(i for i in self.build_plan(targets, options) if i.path not in known)

        if options.deps_only:
            for item in items:
                if not is_dependency_item(item):
                    item.status = error_status("not a dependency directory")
                    self.logger.warning("cleanup_refused path=%s reason=deps_only", item.path)

        runnable = [i for i in items if not i.failed]
        planned_bytes = sum(i.size_bytes for i in runnable)

        if options.dry_run:
            for item in runnable:
                item.status = STATUS_PLANNED
            self.logger.info("cleanup_dry_run items=%s planned_bytes=%s", len(runnable), planned_bytes)
            return DeleteResult(0, 0, planned_bytes, True, options.quarantine, items)

        stamp = int(time.time())
        for item in runnable:
            try:
                if not os.path.lexists(item.path):
                    raise FileNotFoundError(item.path)
                if options.quarantine:
                    item.destination = self._move_to_quarantine(item.path, stamp)
                    item.status = STATUS_MOVED
                else:
                    self._delete_permanently(item.path)
                    item.status = STATUS_DELETED
                self.logger.info("cleanup_success path=%s status=%s bytes=%s", item.path, item.status, item.size_bytes)
            except Exception as exc:  # pylint: disable=broad-except
                item.status = error_status(exc)
                item.destination = None
                self.logger.error("cleanup_failed path=%s err=%s", item.path, exc)

        done = [i for i in items if i.succeeded]
        result = DeleteResult(
            removed_count=len(done),
            reclaimed_bytes=sum(i.size_bytes for i in done),
            planned_bytes=planned_bytes,
            dry_run=False,
            quarantine=options.quarantine,
            items=items,
        )
        self.logger.info(
            "cleanup_complete removed=%s failed=%s reclaimed=%s",
            result.removed_count, len(items) - result.removed_count, human_bytes(result.reclaimed_bytes),
        )
        return result

    def _quarantine_destination(self, original: str, stamp: int) -> Path:
        name = os.path.basename(os.path.normpath(original)) or "item"
        destination = self.quarantine_dir / f"{stamp}_{name}"
        counter = 1
        while os.path.lexists(destination):
            destination = self.quarantine_dir / f"{stamp}_{name}_{counter}"
            counter += 1
        return destination

    def _move_to_quarantine(self, original: str, stamp: int) -> str:
        self.quarantine_dir.mkdir(parents=True, exist_ok=True)
        destination = self._quarantine_destination(original, stamp)
        shutil.move(original, str(destination))
        return str(destination)

    def _delete_permanently(self, path: str) -> None:
        p = Path(path)
        if p.is_symlink() or p.is_file():
            p.unlink()
        elif p.is_dir():
            shutil.rmtree(p)
        else:
            p.unlink()

    # ------------------------------- Restore ------------------------------- #

    def restore(self, items: Iterable[DeleteItem | dict[str, Any]]) -> dict[str, Any]:
        """Move quarantined items back to their original paths."""
        restored = 0
        failures: list[dict[str, str]] = []
        skipped = 0

        for raw in items:
            original = raw.get("path") if isinstance(raw, dict) else raw.path
            destination = raw.get("destination") if isinstance(raw, dict) else raw.destination
            if not original or not destination:
                skipped += 1
                continue
            try:
                if not os.path.lexists(destination):
                    raise FileNotFoundError(f"Quarantine path missing: {destination}")
                if os.path.lexists(original):
                    raise FileExistsError(f"Original path already exists: {original}")
                Path(original).parent.mkdir(parents=True, exist_ok=True)
                shutil.move(destination, original)
                restored += 1
                self.logger.info("restore_success path=%s from=%s", original, destination)
            except Exception as exc:  # pylint: disable=broad-except
                failures.append({"path": original, "destination": destination, "error": str(exc)})
                self.logger.error("restore_failed path=%s err=%s", original, exc)

        return {
            "restored": restored,
            "failed": len(failures),
            "skipped": skipped,
            "failures": failures,
        }


__all__ = [
    "DEPENDENCY_SUBDIRS",
    "DeleteItem",
    "DeleteOptions",
    "DeleteResult",
    "DeleteTarget",
    "DeletionEngine",
]

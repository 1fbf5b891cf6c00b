#!/usr/bin/env python3
"""devclean orchestrator and command line.

Wires the scanner, risk scorer, assessment cache, external classifier and
deletion engine into two flows:

- scan: discover projects, score them, consult/refresh the cache
- clean: plan and (optionally) execute deletion for an explicit target list

Dry-run is the default everywhere; executing from the CLI also needs ``--yes``.
"""

from __future__ import annotations

import argparse
import concurrent.futures
import dataclasses
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Iterable, Sequence

from devclean import assessment_cache
from devclean.classifier import ExternalClassifier, GeminiClassifier
from devclean.cleanup import DeleteItem, DeleteOptions, DeleteResult, DeleteTarget, DeletionEngine, TargetLike
from devclean.common import APP_NAME, default_max_workers, now_utc_iso, setup_logger
from devclean.risk import RiskAssessment, RiskScorer
from devclean.scanner import ProgressSink, ProjectMeta, ProjectScanner, ScanOptions

# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True)
class ProjectRecord:
    meta: ProjectMeta
    risk: RiskAssessment

    def to_dict(self) -> dict[str, Any]:
        return self.meta.to_dict() | {"risk": self.risk.to_dict()}


@dataclasses.dataclass(slots=True)
class AiStats:
    cache_hits: int = 0
    cache_misses: int = 0
    calls: int = 0
    failures: int = 0


@dataclasses.dataclass(slots=True)
class ScanReport:
    projects: list[ProjectRecord]
    summary: dict[str, Any]
    ai_stats: AiStats | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "ai_stats": dataclasses.asdict(self.ai_stats) if self.ai_stats else None,
            "projects": [p.to_dict() for p in self.projects],
        }


# ------------------------------- Orchestrator ------------------------------- #


class Engine:
    """Top-level orchestrator for scan and cleanup flows."""

    def __init__(
        self,
        classifier: ExternalClassifier | None = None,
        ai_enabled: bool = True,
        max_workers: int | None = None,
        log_file: Path | None = None,
        quarantine_dir: Path | None = None,
        logger: logging.Logger | None = None,
    ):
        self.logger = logger or setup_logger(log_file)
        self.ai_enabled = ai_enabled
        self.classifier = classifier
        if ai_enabled and classifier is None:
            self.classifier = GeminiClassifier.from_environment()
            if self.classifier is None:
                self.logger.warning("ai_disabled reason=missing_api_key")
        self.max_workers = max_workers or default_max_workers()
        self.risk = RiskScorer()
        self.deleter = DeletionEngine(quarantine_dir=quarantine_dir, logger=self.logger)

    def close(self) -> None:
        close = getattr(self.classifier, "close", None)
        if callable(close):
            close()

    @property
    def external_enabled(self) -> bool:
        return self.ai_enabled and self.classifier is not None

    def scan(
        self,
        root: str,
        options: ScanOptions | None = None,
        progress: ProgressSink | None = None,
    ) -> ScanReport:
        options = options or ScanOptions(max_workers=self.max_workers)
        started = time.perf_counter()

        scanner = ProjectScanner(options, self.logger)
        projects = scanner.scan(root, progress)
        cache_root = scanner.resolve_walk_root(root)

        stats: AiStats | None = None
        if self.external_enabled:
            stats = AiStats()
            records = self._assess_with_external(cache_root, projects, stats, options.max_workers)
        else:
            records = [ProjectRecord(meta=p, risk=self.risk.heuristic(p)) for p in projects]

        duration = time.perf_counter() - started
        cache_records = [r for r in records if r.meta.is_cache_dir]
        summary = {
            "root_path": cache_root,
            "scan_all": options.scan_all,
            "scan_caches": options.include_cache_dirs,
            "project_count": len(records),
            "cache_count": len(cache_records),
            "cache_bytes": sum(r.meta.size_bytes for r in cache_records),
            "scanned_entries": scanner.scanned_entries,
            "skipped_entries": scanner.skipped_entries,
            "duration_sec": round(duration, 3),
        }
        self.logger.info(
            "scan_complete root=%s projects=%s duration=%.3f ai=%s",
            cache_root, len(records), duration, self.external_enabled,
        )
        return ScanReport(projects=records, summary=summary, ai_stats=stats)

    def _assess_with_external(
        self,
        cache_root: str,
        projects: list[ProjectMeta],
        stats: AiStats,
        max_workers: int,
    ) -> list[ProjectRecord]:
        doc = assessment_cache.open_cache(cache_root, self.logger)
        heuristics = [self.risk.heuristic(p) for p in projects]
        externals: list[RiskAssessment | None] = [None] * len(projects)
        hashes: list[str | None] = [None] * len(projects)
        pending: list[int] = []

        for idx, meta in enumerate(projects):
            if meta.is_cache_dir:
                continue
            content_hash = assessment_cache.hash_manifest(meta.manifest_path) if meta.manifest_path else None
            hashes[idx] = content_hash
            if content_hash is not None:
                cached = assessment_cache.lookup(doc, meta.manifest_path, content_hash)
                if cached is not None:
                    stats.cache_hits += 1
                    externals[idx] = cached
                    continue
            stats.cache_misses += 1
            pending.append(idx)

        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as ex:
            futures = {
                ex.submit(self._classify_safely, projects[idx], hashes[idx] or ""): idx
                for idx in pending
            }
            stats.calls = len(futures)
            for fut in concurrent.futures.as_completed(futures):
                externals[futures[fut]] = fut.result()

        # Cache mutations stay on this thread, after every call has finished.
        for idx in pending:
            result = externals[idx]
            if result is None:
                stats.failures += 1
                continue
            content_hash = hashes[idx]
            if content_hash is not None:
                assessment_cache.store(doc, projects[idx].manifest_path, content_hash, result)

        assessment_cache.persist(cache_root, doc, self.logger)

        return [
            ProjectRecord(meta=meta, risk=self.risk.merge(heuristics[idx], externals[idx]))
            for idx, meta in enumerate(projects)
        ]

    def _classify_safely(self, project: ProjectMeta, content_hash: str) -> RiskAssessment | None:
        try:
            return self.classifier.classify(project, content_hash)
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.warning("external_classify_failed path=%s err=%s", project.path, exc)
            return None

    def build_plan(self, targets: Iterable[TargetLike], options: DeleteOptions) -> list[DeleteItem]:
        return self.deleter.build_plan(targets, options)

    def execute(self, plan_or_targets: Sequence[Any], options: DeleteOptions) -> DeleteResult:
        return self.deleter.execute(plan_or_targets, options)

    def restore(self, items: Iterable[Any]) -> dict[str, Any]:
        return self.deleter.restore(items)


# -------------------------------- CLI -------------------------------------- #


def export_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Find local JavaScript projects, score deletion risk, and clean them up safely.",
    )
    parser.add_argument("--log-file", default=None, help="Action log path")
    parser.add_argument("--quarantine-dir", default=None, help="Where quarantined folders are moved")
    parser.add_argument("--workers", type=int, default=None, help="Worker cap for sizing and AI calls")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan for projects and score them")
    scan.add_argument("--path", default=".", help="Root directory to scan")
    scan.add_argument("--all", action="store_true", help="Scan the whole volume of --path")
    scan.add_argument("--caches", action="store_true", help="Include package-manager cache directories")
    scan.add_argument("--no-ai", action="store_true", help="Heuristic scoring only")
    scan.add_argument("--output", default=None, help="Also write the JSON result to this file")

    clean = sub.add_parser("clean", help="Plan or execute deletion of explicit paths")
    clean.add_argument("paths", nargs="+", help="Project directories to clean")
    clean.add_argument("--cache-dir", action="append", default=[], help="Cache directory target (repeatable)")
    clean.add_argument("--deps-only", action="store_true", help="Only remove dependency/build-cache folders")
    clean.add_argument("--execute", action="store_true", help="Actually modify the filesystem")
    clean.add_argument("--permanent", action="store_true", help="Delete instead of moving to quarantine")
    clean.add_argument("--yes", action="store_true", help="Confirm a destructive --execute run")
    clean.add_argument("--output", default=None, help="Also write the JSON result to this file")

    restore = sub.add_parser("restore", help="Restore quarantined items from a clean result file")
    restore.add_argument("--from", dest="result_file", required=True, help="JSON written by 'clean --output'")

    return parser


def command_scan(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    options = ScanOptions(scan_all=args.all, include_cache_dirs=args.caches, max_workers=engine.max_workers)
    return engine.scan(args.path, options).to_dict()


def command_clean(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    if args.execute and not args.yes:
        raise ValueError("Refusing to modify the filesystem without --yes. Re-run with --execute --yes.")
    targets = [DeleteTarget(p) for p in args.paths] + [DeleteTarget(p, is_cache_dir=True) for p in args.cache_dir]
    options = DeleteOptions(deps_only=args.deps_only, dry_run=not args.execute, quarantine=not args.permanent)
    return engine.execute(targets, options).to_dict()


def command_restore(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    data = json.loads(Path(args.result_file).read_text(encoding="utf-8"))
    items = data.get("items", []) if isinstance(data, dict) else []
    return engine.restore(i for i in items if isinstance(i, dict) and i.get("status") == "moved")


def dispatch(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    handlers = {
        "scan": command_scan,
        "clean": command_clean,
        "restore": command_restore,
    }
    return handlers[args.command](engine, args)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    engine: Engine | None = None
    try:
        engine = Engine(
            ai_enabled=args.command == "scan" and not args.no_ai,
            max_workers=args.workers,
            log_file=Path(args.log_file) if args.log_file else None,
            quarantine_dir=Path(args.quarantine_dir) if args.quarantine_dir else None,
        )
        result = dispatch(engine, args)
        output = getattr(args, "output", None)
        if output:
            export_json(Path(output), result)

        print(json.dumps({
            "status": "ok",
            "command": args.command,
            "timestamp": now_utc_iso(),
            "data": result,
        }, indent=2))
        return 0
    except Exception as exc:  # pylint: disable=broad-except
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1
    finally:
        if engine is not None:
            engine.close()


if __name__ == "__main__":
    raise SystemExit(main())

"""Content-addressed cache of external risk judgments.

One JSON document per scanned root::

    {"version": 1,
     "entries": {"<manifestPath>": {"contentHash": "...",
                                    "assessment": {...},
                                    "updatedAt": 1700000000000}}}

An entry is only usable while ``contentHash`` equals the SHA-256 of the
manifest's raw bytes. Reading never raises; writing is atomic and happens
once per scan session. Concurrent processes: last writer wins.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from devclean.common import APP_NAME, CACHE_FILE_NAME, data_dir, get_logger, now_ms
from devclean.risk import RiskAssessment

CACHE_VERSION = 1


@dataclasses.dataclass(slots=True)
class CacheEntry:
    content_hash: str
    assessment: RiskAssessment
    updated_at: int

    def to_json(self) -> dict[str, Any]:
        return {
            "contentHash": self.content_hash,
            "assessment": self.assessment.to_json(),
            "updatedAt": self.updated_at,
        }


@dataclasses.dataclass(slots=True)
class CacheDocument:
    version: int = CACHE_VERSION
    entries: dict[str, CacheEntry] = dataclasses.field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "entries": {key: entry.to_json() for key, entry in self.entries.items()},
        }


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_manifest(path: str | Path) -> str | None:
    try:
        return hash_bytes(Path(path).read_bytes())
    except OSError:
        return None


def cache_path(root: str | Path) -> Path:
    return Path(root) / CACHE_FILE_NAME


def fallback_cache_path(root: str | Path) -> Path:
    digest = hash_bytes(str(root).encode("utf-8"))
    return data_dir() / "cache" / f"cache-{digest}.json"


def _parse_document(data: Any) -> CacheDocument:
    if not isinstance(data, dict) or data.get("version") != CACHE_VERSION:
        raise ValueError("unsupported cache version")
    raw_entries = data.get("entries")
    if not isinstance(raw_entries, dict):
        raise ValueError("entries must be an object")

    doc = CacheDocument()
    for key, raw in raw_entries.items():
        if not isinstance(raw, dict):
            raise ValueError(f"entry {key!r} is not an object")
        content_hash = raw.get("contentHash")
        updated_at = raw.get("updatedAt", 0)
        assessment = raw.get("assessment")
        if not isinstance(content_hash, str) or not isinstance(assessment, dict):
            raise ValueError(f"entry {key!r} is malformed")
        if isinstance(updated_at, bool) or not isinstance(updated_at, (int, float)):
            raise ValueError(f"entry {key!r} has a bad timestamp")
        doc.entries[key] = CacheEntry(
            content_hash=content_hash,
            assessment=RiskAssessment.from_json(assessment),
            updated_at=int(updated_at),
        )
    return doc


def _read_document(path: Path) -> CacheDocument | None:
    try:
        raw = path.read_bytes()
    except OSError:
        return None
    try:
        return _parse_document(json.loads(raw))
    # UnicodeDecodeError is a ValueError: undecodable bytes count as corruption.
    except (ValueError, TypeError, RecursionError):
        return CacheDocument()


def open_cache(root: str | Path, logger: logging.Logger | None = None) -> CacheDocument:
    """Load the cache for ``root``; any problem yields a fresh empty document."""
    logger = logger or get_logger()
    for candidate in (cache_path(root), fallback_cache_path(root)):
        doc = _read_document(candidate)
        if doc is not None:
            logger.debug("cache_loaded path=%s entries=%s", candidate, len(doc.entries))
            return doc
    return CacheDocument()


def lookup(doc: CacheDocument, manifest_path: str, content_hash: str) -> RiskAssessment | None:
    entry = doc.entries.get(manifest_path)
    if entry is None or entry.content_hash != content_hash:
        return None
    return entry.assessment


def store(doc: CacheDocument, manifest_path: str, content_hash: str, assessment: RiskAssessment) -> None:
    doc.entries[manifest_path] = CacheEntry(
        content_hash=content_hash,
        assessment=assessment,
        updated_at=now_ms(),
    )


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{APP_NAME}-", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def persist(root: str | Path, doc: CacheDocument, logger: logging.Logger | None = None) -> Path | None:
    """Write the whole document; returns the path written, or None if nowhere was writable."""
    logger = logger or get_logger()
    text = json.dumps(doc.to_json(), indent=2, ensure_ascii=True)
    for candidate in (cache_path(root), fallback_cache_path(root)):
        try:
            _atomic_write(candidate, text)
            logger.info("cache_persisted path=%s entries=%s", candidate, len(doc.entries))
            return candidate
        except OSError as exc:
            logger.warning("cache_write_failed path=%s err=%s", candidate, exc)
    return None


__all__ = [
    "CACHE_VERSION",
    "CacheDocument",
    "CacheEntry",
    "cache_path",
    "hash_manifest",
    "lookup",
    "open_cache",
    "persist",
    "store",
]

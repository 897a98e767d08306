"""Durable storage for probed capabilities and local overrides.

Both stores hold one record per ``"<provider>:<model>"`` key. Unreadable data
raises ``CacheCorruptionError``; callers decide how to recover.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import tempfile
import time
from pathlib import Path
from typing import Any, Protocol

import aiosqlite
from pydantic import BaseModel, Field, ValidationError

from mosaic.config import settings
from mosaic.errors import CacheCorruptionError
from mosaic.models.capabilities import ProbedCapabilities, coerce_flags, parse_cache_key

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0.0"


class CacheDocument(BaseModel):
    version: str = CACHE_VERSION
    last_updated: float = 0.0
    models: dict[str, dict[str, Any]] = Field(default_factory=dict)


class CapabilityStore(Protocol):
    """Where probed capability records live between runs."""

    location: str

    async def load(self) -> dict[str, ProbedCapabilities]: ...

    async def save(self, entries: dict[str, ProbedCapabilities]) -> None: ...

    async def close(self) -> None: ...


# --- JSON helpers ---


def read_json_document(path: Path) -> CacheDocument | None:
    """Parse a cache-shaped document; None when the file does not exist."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise CacheCorruptionError(str(path), str(exc)) from exc
    try:
        return CacheDocument.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise CacheCorruptionError(str(path), str(exc).splitlines()[0]) from exc


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Write to a sibling temp file, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _decode_entries(models: dict[str, dict[str, Any]], location: str) -> dict[str, ProbedCapabilities]:
    entries: dict[str, ProbedCapabilities] = {}
    for key, payload in models.items():
        if parse_cache_key(key) is None:
            logger.warning("Dropping malformed cache key %r in %s", key, location)
            continue
        try:
            entries[key] = ProbedCapabilities.from_dict(payload)
        except (TypeError, ValueError) as exc:
            logger.warning("Dropping unreadable cache entry %s in %s: %s", key, location, exc)
    return entries


# --- Stores ---


class JsonFileStore:
    """Single JSON document, rewritten atomically on every save."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.location = str(self.path)

    async def load(self) -> dict[str, ProbedCapabilities]:
        document = await asyncio.to_thread(read_json_document, self.path)
        if document is None:
            return {}
        if document.version != CACHE_VERSION:
            logger.warning(
                "Ignoring capability cache %s with version %s (expected %s)",
                self.path,
                document.version,
                CACHE_VERSION,
            )
            return {}
        return _decode_entries(document.models, self.location)

    async def save(self, entries: dict[str, ProbedCapabilities]) -> None:
        document = CacheDocument(
            last_updated=time.time(),
            models={key: caps.to_dict() for key, caps in sorted(entries.items())},
        )
        await asyncio.to_thread(atomic_write_json, self.path, document.model_dump())

    async def close(self) -> None:
        return None


SCHEMA = """
CREATE TABLE IF NOT EXISTS capabilities (
    key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


class SqliteStore:
    """Capability records in SQLite via aiosqlite, one row per key."""

    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        self.location = self.path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self._db is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.path)
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(SCHEMA)
        except sqlite3.DatabaseError as exc:
            await self.close()
            raise CacheCorruptionError(self.path, str(exc)) from exc

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SqliteStore not connected; call connect() first")
        return self._db

    async def load(self) -> dict[str, ProbedCapabilities]:
        await self.connect()
        try:
            cursor = await self.db.execute("SELECT key, payload FROM capabilities ORDER BY key")
            rows = await cursor.fetchall()
        except sqlite3.DatabaseError as exc:
            raise CacheCorruptionError(self.path, str(exc)) from exc

        models: dict[str, dict[str, Any]] = {}
        for row in rows:
            try:
                models[row["key"]] = json.loads(row["payload"])
            except json.JSONDecodeError as exc:
                raise CacheCorruptionError(self.path, f"row {row['key']}: {exc}") from exc
        return _decode_entries(models, self.location)

    async def save(self, entries: dict[str, ProbedCapabilities]) -> None:
        await self.connect()
        await self.db.execute("DELETE FROM capabilities")
        await self.db.executemany(
            "INSERT INTO capabilities (key, payload, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
            [(key, json.dumps(caps.to_dict(), sort_keys=True)) for key, caps in sorted(entries.items())],
        )
        await self.db.commit()


class OverrideFile:
    """User-maintained partial flags per key. Only written on explicit request."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, dict[str, Any]]:
        document = read_json_document(self.path)
        if document is None:
            return {}
        overrides: dict[str, dict[str, Any]] = {}
        for key, flags in document.models.items():
            if parse_cache_key(key) is None:
                logger.warning("Dropping malformed override key %r in %s", key, self.path)
                continue
            try:
                overrides[key] = coerce_flags(flags)
            except ValueError as exc:
                logger.warning("Dropping unreadable override %s: %s", key, exc)
        return overrides

    def save(self, overrides: dict[str, dict[str, Any]]) -> None:
        models = {
            key: {k: getattr(v, "value", v) for k, v in flags.items()}
            for key, flags in sorted(overrides.items())
        }
        document = CacheDocument(last_updated=time.time(), models=models)
        atomic_write_json(self.path, document.model_dump())


def store_from_settings() -> CapabilityStore:
    if settings.cache_backend == "sqlite":
        return SqliteStore(settings.resolve_path(settings.sqlite_file))
    return JsonFileStore(settings.resolve_path(settings.cache_file))

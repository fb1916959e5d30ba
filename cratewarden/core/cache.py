"""Content-addressed scan cache backed by SQLite.

Every remote analysis is stored under (package identity, version, content
hash). The unique constraint on that triple is what guarantees at most one
stored result, and therefore at most one remote call, per distinct content
for the lifetime of the database.

The cache never fails a scan. If the database cannot be opened or written,
it degrades to a pass-through: lookups miss, stores are silent no-ops, and a
single warning is logged.
"""

import hashlib
import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from ..constants import CACHE_STATS_TOP_IDENTITIES, CACHE_STATS_WINDOW_DAYS
from ..models import CacheEntry, CacheStats, Finding
from .exceptions import CacheUnavailableError, ExportError

logger = logging.getLogger(__name__)

_FINDINGS_ADAPTER = TypeAdapter(list[Finding])

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scan_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    package_name TEXT NOT NULL,
    package_version TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    analysis TEXT NOT NULL,
    flagged_patterns_json TEXT NOT NULL,
    scan_date TEXT NOT NULL,
    llm_model TEXT NOT NULL,
    hit_count INTEGER NOT NULL DEFAULT 0,
    UNIQUE(package_name, package_version, content_hash)
);

CREATE INDEX IF NOT EXISTS idx_package_lookup
ON scan_results(package_name, package_version, content_hash);

CREATE TABLE IF NOT EXISTS cache_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_date TEXT NOT NULL,
    total_packages INTEGER NOT NULL DEFAULT 0,
    cache_hits INTEGER NOT NULL DEFAULT 0,
    new_scans INTEGER NOT NULL DEFAULT 0,
    api_calls_saved INTEGER NOT NULL DEFAULT 0
);
"""

_ENTRY_COLUMNS = (
    "id, package_name, package_version, content_hash, analysis, "
    "flagged_patterns_json, scan_date, llm_model, hit_count"
)


def content_hash(data: bytes | str) -> str:
    """SHA-256 hex digest of the analysed content."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanCache:
    """Persistent store of prior analysis results.

    Thread-safe: a single connection is shared behind a lock, and all
    statements are short.
    """

    def __init__(self, database_path: Path | str | None, enabled: bool = True):
        """Open (or create) the cache database.

        Args:
            database_path: SQLite file location. ``":memory:"`` is accepted
                for tests.
            enabled: When False the cache starts in pass-through mode.
        """
        self.database_path = str(database_path) if database_path else None
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._degraded_reason: str | None = None

        if not enabled or not self.database_path:
            self._degraded_reason = "disabled by configuration"
            logger.info("Scan cache disabled - every analysis will call the service")
            return

        try:
            self._conn = self._open(self.database_path)
        except CacheUnavailableError as e:
            self._degrade(str(e))

    @staticmethod
    def _open(database_path: str) -> sqlite3.Connection:
        try:
            if database_path != ":memory:":
                Path(database_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(database_path, check_same_thread=False, timeout=10.0)
            conn.row_factory = sqlite3.Row
            conn.executescript(_SCHEMA)
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise CacheUnavailableError(
                f"Failed to open scan cache at {database_path}: {e}"
            ) from e
        logger.debug(f"Scan cache opened at {database_path}")
        return conn

    def _degrade(self, reason: str) -> None:
        """Switch to pass-through mode, logging only the first failure."""
        if self._degraded_reason is None:
            logger.warning(
                f"Scan cache unavailable, continuing without cache: {reason}"
            )
        self._degraded_reason = reason
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                pass
        self._conn = None

    @property
    def available(self) -> bool:
        return self._conn is not None

    @property
    def degraded_reason(self) -> str | None:
        return self._degraded_reason

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "ScanCache":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Lookup / store
    # ------------------------------------------------------------------

    def lookup(self, identity: str, version: str, hash_: str) -> CacheEntry | None:
        """Return the stored analysis for this exact key, if any.

        Local I/O only. A hit bumps the entry's hit counter.
        """
        with self._lock:
            if self._conn is None:
                return None
            try:
                row = self._conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM scan_results "
                    "WHERE package_name = ? AND package_version = ? AND content_hash = ?",
                    (identity, version, hash_),
                ).fetchone()
                if row is None:
                    return None
                self._conn.execute(
                    "UPDATE scan_results SET hit_count = hit_count + 1 WHERE id = ?",
                    (row["id"],),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._degrade(f"lookup failed: {e}")
                return None

        entry = self._row_to_entry(row)
        if entry is not None:
            entry.hit_count += 1
        return entry

    def store(
        self,
        identity: str,
        version: str,
        hash_: str,
        analysis: str,
        findings: list[Finding],
        model: str,
    ) -> int | None:
        """Store an analysis unless the key already exists.

        Idempotent: the insert is conditional in a single statement, so a
        racing writer for the same key cannot overwrite the first result.

        Returns:
            Row id of the stored (or already present) entry, or None when
            the cache is unavailable.
        """
        findings_json = _FINDINGS_ADAPTER.dump_json(findings).decode("utf-8")
        with self._lock:
            if self._conn is None:
                return None
            try:
                self._conn.execute(
                    "INSERT INTO scan_results "
                    "(package_name, package_version, content_hash, analysis, "
                    "flagged_patterns_json, scan_date, llm_model) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(package_name, package_version, content_hash) DO NOTHING",
                    (
                        identity,
                        version,
                        hash_,
                        analysis,
                        findings_json,
                        _utcnow().isoformat(),
                        model,
                    ),
                )
                self._conn.commit()
                row = self._conn.execute(
                    "SELECT id FROM scan_results "
                    "WHERE package_name = ? AND package_version = ? AND content_hash = ?",
                    (identity, version, hash_),
                ).fetchone()
            except sqlite3.Error as e:
                self._degrade(f"store failed: {e}")
                return None
        return int(row["id"]) if row is not None else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def stats(self, window_days: int = CACHE_STATS_WINDOW_DAYS) -> CacheStats:
        """Entry counts and the identities whose entries are hit most often."""
        stats = CacheStats(window_days=window_days)
        with self._lock:
            if self._conn is None:
                return stats
            cutoff = (_utcnow() - timedelta(days=window_days)).isoformat()
            try:
                stats.total_entries = self._conn.execute(
                    "SELECT COUNT(*) FROM scan_results"
                ).fetchone()[0]
                stats.entries_in_last_window = self._conn.execute(
                    "SELECT COUNT(*) FROM scan_results WHERE scan_date > ?", (cutoff,)
                ).fetchone()[0]
                rows = self._conn.execute(
                    "SELECT package_name, SUM(hit_count) AS hits FROM scan_results "
                    "GROUP BY package_name HAVING hits > 0 "
                    "ORDER BY hits DESC, package_name ASC LIMIT ?",
                    (CACHE_STATS_TOP_IDENTITIES,),
                ).fetchall()
            except sqlite3.Error as e:
                self._degrade(f"stats query failed: {e}")
                return stats
        stats.most_frequently_hit_identities = [
            (row["package_name"], int(row["hits"])) for row in rows
        ]
        return stats

    def evict(self, max_age_days: int) -> int:
        """Delete entries older than ``max_age_days``.

        Returns:
            Number of entries removed.
        """
        cutoff = (_utcnow() - timedelta(days=max_age_days)).isoformat()
        with self._lock:
            if self._conn is None:
                return 0
            try:
                cursor = self._conn.execute(
                    "DELETE FROM scan_results WHERE scan_date < ?", (cutoff,)
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._degrade(f"eviction failed: {e}")
                return 0
        removed = cursor.rowcount
        if removed:
            logger.info(f"Evicted {removed} cache entries older than {max_age_days} days")
        return removed

    def clear(self) -> int:
        """Delete every cached analysis."""
        with self._lock:
            if self._conn is None:
                return 0
            try:
                cursor = self._conn.execute("DELETE FROM scan_results")
                self._conn.commit()
            except sqlite3.Error as e:
                self._degrade(f"clear failed: {e}")
                return 0
        return cursor.rowcount

    def entries(self) -> list[CacheEntry]:
        """All entries, newest first."""
        with self._lock:
            if self._conn is None:
                return []
            try:
                rows = self._conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM scan_results ORDER BY scan_date DESC, id DESC"
                ).fetchall()
            except sqlite3.Error as e:
                self._degrade(f"read failed: {e}")
                return []
        return [entry for entry in map(self._row_to_entry, rows) if entry is not None]

    def export(self, destination: Path | str) -> int:
        """Serialize all entries to a JSON file for backup or analysis.

        Returns:
            Number of exported entries.

        Raises:
            ExportError: If the cache is unavailable or the file cannot be written.
        """
        if self._conn is None:
            raise ExportError(
                f"Scan cache is unavailable: {self._degraded_reason or 'not opened'}"
            )
        entries = self.entries()
        payload = [entry.model_dump(mode="json") for entry in entries]
        try:
            Path(destination).write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            raise ExportError(f"Failed to export cache to {destination}: {e}") from e
        logger.info(f"Exported {len(entries)} cache entries to {destination}")
        return len(entries)

    # ------------------------------------------------------------------
    # Usage statistics
    # ------------------------------------------------------------------

    def record_session(self, total_packages: int, cache_hits: int, new_scans: int) -> None:
        """Append one row of rolling usage statistics."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.execute(
                    "INSERT INTO cache_stats "
                    "(scan_date, total_packages, cache_hits, new_scans, api_calls_saved) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (_utcnow().isoformat(), total_packages, cache_hits, new_scans, cache_hits),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._degrade(f"recording session stats failed: {e}")

    def recent_sessions(self, limit: int = 10) -> list[dict[str, Any]]:
        with self._lock:
            if self._conn is None:
                return []
            try:
                rows = self._conn.execute(
                    "SELECT scan_date, total_packages, cache_hits, new_scans, api_calls_saved "
                    "FROM cache_stats ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            except sqlite3.Error as e:
                self._degrade(f"reading session stats failed: {e}")
                return []
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry | None:
        try:
            findings = _FINDINGS_ADAPTER.validate_json(row["flagged_patterns_json"])
            return CacheEntry(
                id=row["id"],
                package_name=row["package_name"],
                package_version=row["package_version"],
                content_hash=row["content_hash"],
                analysis=row["analysis"],
                findings=findings,
                llm_model=row["llm_model"],
                scan_date=datetime.fromisoformat(row["scan_date"]),
                hit_count=row["hit_count"],
            )
        except (ValidationError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache entry {row['id']}: {e}")
            return None

"""Persistence layer for the lab orchestrator.

Provides JSON documents for small state (cluster registry, cached facts),
plain text logs, and SQLite for monitor history and surfaced errors.
Everything lives under the lab's ``kube-stack`` directory so it survives
restarts and is removed together with the lab.
"""

from __future__ import annotations

import json
import os
import sqlite3
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

SUBDIRS = ["registry", "pv-data", "backups", "logs", "tmp", "config"]


def get_data_dir(storage_path: Optional[Path] = None) -> Path:
    """Get the lab data directory.

    Returns ``<storage>/kube-stack`` where storage defaults to ``~/.kube-lab``,
    or the KUBELAB_DATA_DIR env var when set. Creates subdirectories if they
    don't exist.
    """
    if env_dir := os.environ.get("KUBELAB_DATA_DIR"):
        data_dir = Path(env_dir)
    else:
        data_dir = Path(storage_path or Path.home() / ".kube-lab") / "kube-stack"

    for subdir in SUBDIRS:
        (data_dir / subdir).mkdir(parents=True, exist_ok=True)

    return data_dir


class DataStore:
    """Persistent storage for lab state.

    Provides:
    - JSON documents under ``config/`` (cluster registry, facts snapshot)
    - Append-only text logs under ``logs/``
    - SQLite database for monitor snapshots, alerts and error history
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir else get_data_dir()
        for subdir in SUBDIRS:
            (self.data_dir / subdir).mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / "kubelab.db"
        self.config_dir = self.data_dir / "config"
        self.log_dir = self.data_dir / "logs"
        self.tmp_dir = self.data_dir / "tmp"
        self.backup_dir = self.data_dir / "backups"
        self.registry_dir = self.data_dir / "registry"
        self.pv_dir = self.data_dir / "pv-data"
        self._init_db()

    @property
    def state_file(self) -> Path:
        return self.tmp_dir / "install-state.txt"

    @property
    def monitor_pid_file(self) -> Path:
        return self.tmp_dir / "memory-monitor.pid"

    # --- JSON documents ---

    def save_document(self, name: str, data: Dict[str, Any]) -> None:
        """Save a JSON document, replacing the previous one atomically."""
        doc_file = self.config_dir / f"{name}.json"
        tmp_file = doc_file.with_suffix(".json.tmp")
        tmp_file.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        os.replace(tmp_file, doc_file)

    def load_document(self, name: str) -> Optional[Dict[str, Any]]:
        """Load a JSON document; None if missing or unreadable."""
        doc_file = self.config_dir / f"{name}.json"
        if not doc_file.exists():
            return None

        try:
            return json.loads(doc_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    # --- Text logs ---

    def append_log(self, name: str, line: str) -> None:
        """Append one timestamped line to ``logs/<name>.log``."""
        log_file = self.log_dir / f"{name}.log"
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(f"[{stamp}] {line}\n")

    def tail_log(self, name: str, lines: int = 20) -> List[str]:
        log_file = self.log_dir / f"{name}.log"
        if not log_file.exists():
            return []
        with open(log_file, "r", encoding="utf-8") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]

    # --- SQLite (history, queries) ---

    def _init_db(self) -> None:
        """Create database tables if they don't exist."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY,
                    source TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    data JSON NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_source_timestamp
                ON snapshots(source, timestamp DESC)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY,
                    kind TEXT NOT NULL,
                    message TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details JSON
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS error_history (
                    id INTEGER PRIMARY KEY,
                    kind TEXT NOT NULL,
                    site TEXT,
                    message TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)

    def save_snapshot(self, source: str, data: Dict[str, Any]) -> None:
        """Save a data snapshot (e.g. a memory reading) to the database."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO snapshots (source, timestamp, data) VALUES (?, ?, ?)",
                (source, datetime.utcnow().isoformat(), json.dumps(data)),
            )

    def get_latest_snapshot(self, source: str) -> Optional[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT data FROM snapshots
                WHERE source = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (source,),
            ).fetchone()

        return json.loads(row[0]) if row else None

    def save_alert(self, kind: str, message: str, details: Optional[Dict] = None) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO alerts (kind, message, timestamp, details) VALUES (?, ?, ?, ?)",
                (kind, message, datetime.utcnow().isoformat(), json.dumps(details) if details else None),
            )

    def get_alerts(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent alerts first."""
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT timestamp, kind, message, details FROM alerts ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {
                "timestamp": ts,
                "kind": kind,
                "message": message,
                "details": json.loads(details) if details else None,
            }
            for ts, kind, message, details in rows
        ]

    def save_error(self, kind: str, site: Optional[str], message: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO error_history (kind, site, message, timestamp) VALUES (?, ?, ?, ?)",
                (kind, site, message, datetime.utcnow().isoformat()),
            )

    def get_errors(self, limit: int = 10) -> List[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT timestamp, kind, site, message FROM error_history ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {"timestamp": ts, "kind": kind, "site": site, "message": message}
            for ts, kind, site, message in rows
        ]

    def cleanup_old_data(self, days: int = 30) -> int:
        """Remove history older than specified days.

        Returns number of rows deleted.
        """
        cutoff = (datetime.utcnow() - timedelta(days=days)).isoformat()
        deleted = 0
        with sqlite3.connect(self.db_path) as conn:
            for table in ("snapshots", "alerts", "error_history"):
                cursor = conn.execute(f"DELETE FROM {table} WHERE timestamp < ?", (cutoff,))
                deleted += cursor.rowcount
        return deleted

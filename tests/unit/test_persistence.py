"""Tests for data persistence layer."""

import json
import pytest
import sqlite3

from kubelab.data.persistence import SUBDIRS, DataStore, get_data_dir


class TestDataStore:
    def test_init_creates_directories(self, temp_data_dir):
        store = DataStore(temp_data_dir)

        for subdir in SUBDIRS:
            assert (temp_data_dir / subdir).is_dir()
        assert store.db_path.exists()
        assert store.state_file.parent == store.tmp_dir

    def test_save_and_load_document(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        store.save_document("clusters", {"active": "lab", "clusters": {}})

        loaded = store.load_document("clusters")

        assert loaded == {"active": "lab", "clusters": {}}
        assert not (store.config_dir / "clusters.json.tmp").exists()

    def test_load_document_not_found(self, temp_data_dir):
        assert DataStore(temp_data_dir).load_document("nonexistent") is None

    def test_load_document_corrupt(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        (store.config_dir / "broken.json").write_text("{not json")
        assert store.load_document("broken") is None

    def test_append_and_tail_log(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        for i in range(30):
            store.append_log("install", f"line {i}")

        tail = store.tail_log("install", lines=5)

        assert len(tail) == 5
        assert tail[-1].endswith("line 29")
        assert tail[0].startswith("[")

    def test_tail_missing_log(self, temp_data_dir):
        assert DataStore(temp_data_dir).tail_log("nothing") == []

    def test_snapshots(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        store.save_snapshot("memory", {"used_mb": 1})
        store.save_snapshot("memory", {"used_mb": 2})

        assert store.get_latest_snapshot("memory") == {"used_mb": 2}
        assert store.get_latest_snapshot("other") is None

    def test_alerts_newest_first(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        store.save_alert("memory", "first")
        store.save_alert("swap", "second", {"swap_used_mb": 4000})

        alerts = store.get_alerts()

        assert [a["message"] for a in alerts] == ["second", "first"]
        assert alerts[0]["details"] == {"swap_used_mb": 4000}
        assert alerts[1]["details"] is None

    def test_errors(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        store.save_error("PortInUse", "registry", "port 5000 busy")

        errors = store.get_errors()

        assert errors[0]["kind"] == "PortInUse"
        assert errors[0]["site"] == "registry"

    def test_cleanup_old_data_keeps_recent(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        store.save_alert("memory", "recent")
        assert store.cleanup_old_data(days=30) == 0
        assert len(store.get_alerts()) == 1

    def test_cleanup_old_data_removes_expired(self, temp_data_dir):
        store = DataStore(temp_data_dir)
        with sqlite3.connect(store.db_path) as conn:
            conn.execute(
                "INSERT INTO snapshots (source, timestamp, data) VALUES (?, ?, ?)",
                ("memory", "2020-01-01T00:00:00", json.dumps({"used_mb": 1})),
            )
        store.save_snapshot("memory", {"used_mb": 2})

        assert store.cleanup_old_data(days=30) == 1
        assert store.get_latest_snapshot("memory") == {"used_mb": 2}


class TestGetDataDir:
    def test_env_override(self, temp_data_dir, monkeypatch):
        monkeypatch.setenv("KUBELAB_DATA_DIR", str(temp_data_dir / "custom"))
        data_dir = get_data_dir()
        assert data_dir == temp_data_dir / "custom"
        assert (data_dir / "backups").is_dir()

    def test_under_storage_path(self, temp_data_dir, monkeypatch):
        monkeypatch.delenv("KUBELAB_DATA_DIR", raising=False)
        data_dir = get_data_dir(temp_data_dir)
        assert data_dir == temp_data_dir / "kube-stack"
        assert (data_dir / "pv-data").is_dir()

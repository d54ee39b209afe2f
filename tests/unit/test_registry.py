"""Tests for the multi-cluster registry."""

import tarfile
import pytest
from unittest.mock import MagicMock

from kubelab.data.models import ClusterStatus
from kubelab.errors import AlreadyExists, ConfigInvalid, ErrorKind, NotFound, OrchestratorError
from kubelab.orchestrator.backends import ClusterBackend
from kubelab.orchestrator.executor import RecoveryExecutor
from kubelab.orchestrator.registry import ClusterRegistry


@pytest.fixture
def registry(context, mock_kube):
    return ClusterRegistry(context, mock_kube)


class TestCreateNamedCluster:
    def test_creates_stopped_record_with_storage(self, registry, context):
        record = registry.create_named_cluster("dev", "4GB")

        assert record.status == ClusterStatus.STOPPED
        assert record.storage_path == context.lab_config.storage_path / "dev"
        assert record.storage_path.is_dir()
        assert 'MEMORY_LIMIT="4GB"' in (record.storage_path / ".config").read_text()
        assert record.runtime == "docker"

    def test_first_cluster_becomes_active(self, registry):
        registry.create_named_cluster("dev")
        registry.create_named_cluster("qa")
        assert registry.active_alias == "dev"

    def test_persisted_across_instances(self, registry, context, mock_kube):
        registry.create_named_cluster("dev")
        assert (context.store.config_dir / "clusters.json").exists()
        assert ClusterRegistry(context, mock_kube).get("dev").alias == "dev"

    def test_duplicate_alias(self, registry):
        registry.create_named_cluster("dev")
        with pytest.raises(AlreadyExists) as exc_info:
            registry.create_named_cluster("dev", "2GB")
        assert exc_info.value.exit_code == ErrorKind.ALREADY_EXISTS.exit_code

    @pytest.mark.parametrize("alias", ["", "Dev", "-dev", "dev_1", "a" * 33])
    def test_invalid_alias(self, registry, alias):
        with pytest.raises(ConfigInvalid):
            registry.create_named_cluster(alias)

    def test_invalid_memory_spec_creates_nothing(self, registry):
        with pytest.raises(ConfigInvalid):
            registry.create_named_cluster("dev", "lots")
        assert registry.list_clusters() == []

    def test_lab_data_directory_name_is_reserved(self, registry, context):
        with pytest.raises(ConfigInvalid):
            registry.create_named_cluster("kube-stack")
        assert not (context.lab_config.storage_path / "kube-stack" / ".config").exists()

    def test_alias_cannot_land_on_data_dir(self, registry, context, temp_data_dir):
        # data dir is <tmp>/data; with STORAGE_PATH=<tmp> the alias "data" would collide
        context.lab_config.storage_path = temp_data_dir
        with pytest.raises(ConfigInvalid):
            registry.create_named_cluster("data")
        assert registry.list_clusters() == []


class TestSwitchCluster:
    def test_unknown_alias_leaves_active_unchanged(self, registry, mock_kube):
        registry.create_named_cluster("dev")

        with pytest.raises(NotFound):
            registry.switch_cluster("ghost")

        assert registry.active_alias == "dev"
        mock_kube.merge.assert_not_called()

    def test_switch_to_running_cluster_restores_context(self, registry, mock_kube):
        registry.create_named_cluster("dev")
        registry.create_named_cluster("qa")
        registry.set_status("qa", ClusterStatus.RUNNING)

        result = registry.switch_cluster("qa")

        assert registry.active_alias == "qa"
        assert result.previous_alias == "dev"
        assert result.degraded is False
        mock_kube.merge.assert_called_once_with("qa")

    def test_merge_failure_falls_back_to_use_context(self, registry, mock_kube):
        registry.create_named_cluster("qa")
        registry.set_status("qa", ClusterStatus.RUNNING)
        mock_kube.merge.return_value = False

        result = registry.switch_cluster("qa")

        mock_kube.use.assert_called_once_with("k3d-qa")
        assert result.context_restored is True

    def test_switch_to_stopped_cluster_is_registry_only(self, registry, mock_kube):
        registry.create_named_cluster("dev")
        registry.create_named_cluster("qa")

        result = registry.switch_cluster("qa")

        assert registry.active_alias == "qa"
        assert result.degraded is True
        mock_kube.merge.assert_not_called()
        mock_kube.use.assert_not_called()


class TestListing:
    def test_list_is_sorted_by_alias(self, registry):
        for alias in ("zeta", "alpha", "mid"):
            registry.create_named_cluster(alias)
        assert [r.alias for r in registry.list_clusters()] == ["alpha", "mid", "zeta"]

    def test_get_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.get("ghost")

    def test_ensure_default_registers_lab_cluster(self, registry, context):
        record = registry.ensure_default()
        assert record.alias == "lab"
        assert record.storage_path == context.store.data_dir
        assert registry.active_alias == "lab"
        registry.ensure_default()
        assert len(registry.list_clusters()) == 1


class TestStartStop:
    def test_start_and_stop(self, registry, context):
        registry.create_named_cluster("dev")
        executor = RecoveryExecutor(context, sleep=lambda s: None)
        backend = MagicMock(spec=ClusterBackend)

        assert registry.start_cluster("dev", executor, backend).status == ClusterStatus.RUNNING
        backend.start.assert_called_once_with("dev")
        assert registry.stop_cluster("dev", executor, backend).status == ClusterStatus.STOPPED
        backend.stop.assert_called_once_with("dev")

    def test_failed_start_keeps_status(self, registry, context):
        registry.create_named_cluster("dev")
        executor = RecoveryExecutor(context, sleep=lambda s: None)
        backend = MagicMock(spec=ClusterBackend)
        backend.start.side_effect = OrchestratorError("k3d failed", kind=ErrorKind.CLUSTER_START_FAILED)

        with pytest.raises(OrchestratorError):
            registry.start_cluster("dev", executor, backend)

        assert backend.start.call_count == 3
        assert registry.get("dev").status == ClusterStatus.STOPPED


class TestBackups:
    def test_backup_archives_storage(self, registry):
        record = registry.create_named_cluster("dev")
        (record.storage_path / "data.txt").write_text("payload")

        path = registry.backup_cluster("dev")

        assert path.name.startswith("dev_backup_")
        assert path.name.endswith(".tar.gz")
        with tarfile.open(path, "r:gz") as tar:
            assert "dev/data.txt" in tar.getnames()

    def test_backup_names_never_collide(self, registry):
        registry.create_named_cluster("dev")
        first = registry.backup_cluster("dev")
        second = registry.backup_cluster("dev")
        assert first != second
        assert len(registry.list_backups("dev")) == 2

    def test_backup_active_by_default(self, registry):
        registry.create_named_cluster("dev")
        assert registry.backup_cluster().name.startswith("dev_backup_")

    def test_backup_excludes_backup_directory(self, registry, context):
        registry.ensure_default()
        registry.backup_cluster("lab")
        path = registry.backup_cluster("lab")

        with tarfile.open(path, "r:gz") as tar:
            names = tar.getnames()
        assert "lab" in names
        assert not any(name.startswith("lab/backups") for name in names)

    def test_backup_unknown_alias(self, registry):
        with pytest.raises(NotFound):
            registry.backup_cluster("ghost")

    def test_backup_without_active_cluster(self, registry):
        with pytest.raises(NotFound):
            registry.backup_cluster()

    def test_backup_missing_storage(self, registry):
        record = registry.create_named_cluster("dev")
        (record.storage_path / ".config").unlink()
        record.storage_path.rmdir()
        with pytest.raises(NotFound):
            registry.backup_cluster("dev")

    def test_list_backups_filters_alias(self, registry):
        registry.create_named_cluster("dev")
        registry.create_named_cluster("qa")
        registry.backup_cluster("dev")
        registry.backup_cluster("qa")
        assert len(registry.list_backups()) == 2
        assert [p.name.split("_backup_")[0] for p in registry.list_backups("qa")] == ["qa"]

"""Tests for the lab lifecycle: planning, preflight, install and rollback."""

import pytest
from unittest.mock import MagicMock

from kubelab.data.models import ClusterStatus, Phase, RuntimeFlavor
from kubelab.errors import ConfigInvalid, ErrorKind, OrchestratorError
from kubelab.orchestrator.backends import AddonInstaller, ClusterBackend, CommandRunner, RegistryService
from kubelab.orchestrator.config import LabConfig
from kubelab.orchestrator.lifecycle import LabLifecycle
from kubelab.orchestrator.workers import MonitorHandle


@pytest.fixture
def runner():
    runner = MagicMock(spec=CommandRunner)
    runner.dry_run = False
    runner.succeeds.return_value = False
    return runner


@pytest.fixture
def lab(context, runner, mock_kube):
    """Lifecycle with every external backend mocked."""
    lifecycle = LabLifecycle(context, runner=runner, kube=mock_kube, sleep=lambda s: None, prompt=lambda q: "")
    lifecycle.cluster = MagicMock(spec=ClusterBackend)
    lifecycle.registry_service = MagicMock(spec=RegistryService)
    lifecycle.registry_service.is_running.return_value = False
    lifecycle.addons = MagicMock(spec=AddonInstaller)
    lifecycle.executor.teardowns = lifecycle.teardowns()
    return lifecycle


class TestPlan:
    def test_default_plan_on_roomy_host(self, lab):
        assert [p.name for p in lab.plan()] == ["registry", "metrics-server", "traefik"]

    def test_low_memory_plan_is_registry_only(self, lab, context):
        context.flags.low_memory = True
        assert [p.name for p in lab.plan()] == ["registry"]

    def test_requested_components_put_registry_first(self, lab):
        assert [p.name for p in lab.plan(["monitoring", "registry"])] == ["registry", "monitoring"]

    def test_requested_unknown_component(self, lab):
        with pytest.raises(ConfigInvalid):
            lab.plan(["istio"])

    def test_requested_too_large(self, lab, mock_system_probe):
        mock_system_probe.detect_total_ram_mb.return_value = 3072
        with pytest.raises(OrchestratorError) as exc_info:
            lab.plan(["monitoring", "argocd"])
        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_MEMORY

    def test_nothing_fits(self, lab, mock_system_probe):
        mock_system_probe.detect_total_ram_mb.return_value = 1536
        with pytest.raises(OrchestratorError) as exc_info:
            lab.plan()
        assert exc_info.value.exit_code == 32


class TestPreflight:
    def test_clean_host_passes(self, lab, runner):
        lab.preflight(lab.plan())
        runner.require.assert_any_call("k3d")
        runner.require.assert_any_call("helm")

    def test_competing_cluster_blocks_non_interactive(self, lab, mock_runtime_probe):
        mock_runtime_probe.detect_competing_clusters.return_value = ["minikube"]
        with pytest.raises(OrchestratorError) as exc_info:
            lab.preflight(lab.plan())
        assert exc_info.value.kind == ErrorKind.NETWORK_CONFLICT
        assert "minikube" in exc_info.value.message

    def test_competing_cluster_confirmed_interactively(self, lab, context, mock_runtime_probe):
        mock_runtime_probe.detect_competing_clusters.return_value = ["kind"]
        context.flags.non_interactive = False
        lab.prompt = lambda question: "y"
        lab.preflight(lab.plan())

    def test_no_runtime(self, lab, mock_runtime_probe):
        mock_runtime_probe.detect_runtime_flavor.return_value = RuntimeFlavor.NONE
        with pytest.raises(OrchestratorError) as exc_info:
            lab.preflight(lab.plan())
        assert exc_info.value.kind == ErrorKind.RUNTIME_UNAVAILABLE

    def test_stopped_runtime_is_started(self, lab, runner, mock_runtime_probe):
        mock_runtime_probe.runtime_running.side_effect = [False, True, True]
        lab.preflight(lab.plan())
        runner.run.assert_any_call(
            ["sudo", "-n", "systemctl", "start", "docker"],
            kind=ErrorKind.RUNTIME_NOT_RUNNING,
            step="start-runtime",
        )

    def test_low_disk(self, lab, mock_system_probe):
        mock_system_probe.disk_free_gb.return_value = 1.0
        with pytest.raises(OrchestratorError) as exc_info:
            lab.preflight(lab.plan())
        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_DISK

    def test_busy_registry_port_moves(self, lab, context, mock_runtime_probe):
        mock_runtime_probe.find_available_port.side_effect = lambda start: start + 1
        lab.preflight(lab.plan())
        assert context.lab_config.registry_port == 5001

    def test_running_registry_keeps_its_port(self, lab, context, mock_runtime_probe):
        mock_runtime_probe.find_available_port.side_effect = lambda start: start + 1
        lab.registry_service.is_running.return_value = True
        lab.registry_service.published_port.return_value = 5002
        lab.preflight(lab.plan())
        assert context.lab_config.registry_port == 5002
        mock_runtime_probe.find_available_port.assert_not_called()


class TestInstall:
    def test_happy_path(self, lab, context):
        summary = lab.install()

        assert summary["installed"] == ["registry", "metrics-server", "traefik"]
        assert summary["skipped"] == []
        assert summary["tier"] == "high"
        lab.cluster.create.assert_called_once()
        assert lab.cluster.create.call_args.kwargs["agents"] == 2
        lab.addons.apply_namespaces.assert_called_once_with(2048, 8)
        lab.addons.install_metrics_server.assert_called_once_with()
        lab.addons.install_argocd.assert_not_called()
        assert not context.store.state_file.exists()
        assert lab.registry.get("lab").status == ClusterStatus.RUNNING
        assert LabConfig.load(context.config_path).os_type == "linux"

    def test_required_step_failure_rolls_back(self, lab, context):
        lab.cluster.create.side_effect = OrchestratorError("k3d exploded", kind=ErrorKind.CLUSTER_START_FAILED)

        with pytest.raises(OrchestratorError) as exc_info:
            lab.install()

        err = exc_info.value
        assert err.kind == ErrorKind.CLUSTER_START_FAILED
        assert err.attempted == ["report cluster failure"]
        assert lab.cluster.create.call_count == 3
        lab.cluster.delete.assert_called_once_with("lab")
        lab.registry_service.remove.assert_not_called()
        lab.addons.apply_namespaces.assert_not_called()
        state = lab.executor.state
        assert state.phase_of("registry") == Phase.COMPLETED
        assert state.phase_of("cluster") == Phase.FAILED

    def test_optional_failure_is_skipped(self, lab):
        lab.addons.install_traefik.side_effect = OrchestratorError(
            "chart repo unreachable", kind=ErrorKind.DEPENDENCY_REPO_FAILED
        )

        summary = lab.install()

        assert summary["skipped"] == ["traefik"]
        assert summary["installed"] == ["registry", "metrics-server"]
        assert lab.addons.install_traefik.call_count == 3
        lab.addons.remove_traefik.assert_called_once_with()
        lab.cluster.delete.assert_not_called()

    def test_optional_cleanup_failure_does_not_abort(self, lab):
        lab.addons.install_traefik.side_effect = OrchestratorError("helm timed out", kind=ErrorKind.TIMEOUT)
        lab.addons.remove_traefik.side_effect = OrchestratorError("release stuck", kind=ErrorKind.GENERIC)
        assert lab.install()["skipped"] == ["traefik"]

    def test_reinstall_reuses_running_registry(self, lab, context, mock_runtime_probe):
        # Our own registry container is the one holding :5000
        mock_runtime_probe.find_available_port.side_effect = lambda start: start + 1
        lab.registry_service.is_running.return_value = True
        lab.registry_service.published_port.return_value = 5000

        summary = lab.install()

        assert summary["registry"] == "localhost:5000"
        assert lab.registry_service.start.call_args.args[1] == 5000
        lab.registry_service.wait_ready.assert_called_with(5000)
        lab.registry_service.remove.assert_not_called()

    def test_interrupted_run_is_rolled_back_first(self, lab):
        lab.executor.state.record("cluster", Phase.STARTED)

        summary = lab.install()

        lab.cluster.delete.assert_called_once_with("lab")
        assert [c[0] for c in lab.cluster.method_calls][:2] == ["delete", "create"]
        assert summary["installed"] == ["registry", "metrics-server", "traefik"]

    def test_interrupted_run_teardown_failure_stops_install(self, lab):
        lab.executor.state.record("cluster", Phase.STARTED)
        lab.cluster.delete.side_effect = OrchestratorError("k3d unreachable")

        with pytest.raises(OrchestratorError) as exc_info:
            lab.install()

        assert exc_info.value.kind == ErrorKind.INSTALLATION_FAILED
        assert "kubelab rollback" in exc_info.value.message
        lab.cluster.create.assert_not_called()
        assert lab.executor.state.phase_of("cluster") == Phase.FAILED

    def test_dry_run_leaves_no_trace(self, context, mock_kube):
        context.flags.dry_run = True
        lifecycle = LabLifecycle(context, kube=mock_kube, sleep=lambda s: None)

        summary = lifecycle.install()

        assert summary["dry_run"] is True
        assert lifecycle.registry.list_clusters() == []
        assert not context.config_path.exists()
        assert not context.store.state_file.exists()
        mock_kube.save.assert_not_called()


class TestConfigAndRollback:
    def test_first_run_writes_defaults_non_interactive(self, lab, context):
        context.first_run = True
        lab.ensure_config()
        assert context.first_run is False
        assert LabConfig.load(context.config_path).cluster_name == "lab"

    def test_first_run_prompts(self, lab, context, temp_data_dir):
        context.first_run = True
        context.flags.non_interactive = False
        answers = iter([str(temp_data_dir / "custom"), "mylab", "4GB"])
        lab.prompt = lambda question: next(answers)

        lab.ensure_config()

        saved = LabConfig.load(context.config_path)
        assert saved.cluster_name == "mylab"
        assert saved.memory_limit == "4GB"
        assert saved.storage_path == temp_data_dir / "custom"

    def test_first_run_rejects_bad_memory(self, lab, context):
        context.first_run = True
        context.flags.non_interactive = False
        answers = iter(["", "", "plenty"])
        lab.prompt = lambda question: next(answers)
        with pytest.raises(ConfigInvalid):
            lab.ensure_config()

    def test_commands_require_config(self, lab, context):
        context.first_run = True
        with pytest.raises(OrchestratorError) as exc_info:
            lab.start()
        assert exc_info.value.kind == ErrorKind.CONFIG_MISSING

    def test_manual_rollback_after_crash(self, lab):
        lab.executor.state.record("registry", Phase.STARTED)
        report = lab.rollback()
        assert report.rolled_back == ["registry"]
        lab.registry_service.remove.assert_called_once_with("local-registry")


class TestStartStopStatus:
    def test_start_and_stop(self, lab, mock_kube):
        record = lab.start()
        assert record.status == ClusterStatus.RUNNING
        lab.cluster.start.assert_called_once_with("lab")
        mock_kube.merge.assert_called_once_with("lab")

        record = lab.stop()
        assert record.status == ClusterStatus.STOPPED
        lab.registry_service.stop.assert_called_once_with("local-registry")
        mock_kube.restore.assert_called_once_with()

    def test_status(self, lab):
        lab.registry.ensure_default()
        status = lab.status()
        assert status["configured"] is True
        assert status["active_cluster"]["alias"] == "lab"
        assert status["tier"] == "high"
        assert status["monitor_running"] is False

    def test_health(self, lab, context):
        context.store.save_error("PortInUse", "registry", "busy")
        context.store.save_snapshot("memory", {"used_mb": 5120})
        health = lab.health()
        assert health["memory"]["total_mb"] == 16384
        assert health["insights"] == []
        assert health["recent_errors"][0]["kind"] == "PortInUse"
        assert health["last_monitor_sample"] == {"used_mb": 5120}

    def test_start_monitor_forwards_options(self, lab, context, temp_data_dir):
        context.settings_path = temp_data_dir / "settings.yaml"
        lab.monitor_handle = MagicMock(spec=MonitorHandle)
        lab.monitor_handle.start.return_value = 4242

        assert lab.start_monitor(15) == 4242

        argv = lab.monitor_handle.start.call_args.args[0]
        assert argv[argv.index("--interval") + 1] == "15"
        assert argv[argv.index("--config") + 1] == str(context.config_path)
        assert argv[argv.index("--settings") + 1] == str(temp_data_dir / "settings.yaml")

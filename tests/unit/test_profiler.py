"""Tests for host probes and the cached profiler."""

import pytest
from unittest.mock import patch, MagicMock

from kubelab.collectors.profiler import FALLBACK_RAM_MB, CachedProfiler
from kubelab.collectors.runtime import RuntimeProbe
from kubelab.collectors.system import SystemProbe
from kubelab.data.cache import ProbeCache
from kubelab.data.models import CPUArch, MemoryReading, OSFamily, RuntimeFlavor
from kubelab.errors import ErrorKind, OrchestratorError, ProbeUnavailable


def fake_run(responses):
    """subprocess.run stand-in answering from {command line: (returncode, stdout)}."""

    def _run(cmd, **kwargs):
        key = " ".join(cmd)
        if key not in responses:
            raise FileNotFoundError(cmd[0])
        returncode, stdout = responses[key]
        return MagicMock(returncode=returncode, stdout=stdout, stderr="")

    return _run


class TestSystemProbe:
    def test_always_available(self):
        assert SystemProbe().is_available() is True

    def test_detect_os_linux(self, temp_data_dir):
        (temp_data_dir / "version").write_text("Linux version 6.5.0-generic (gcc)")
        probe = SystemProbe(proc_root=temp_data_dir)
        with patch("platform.system", return_value="Linux"):
            assert probe.detect_os() == OSFamily.LINUX

    def test_detect_os_wsl2(self, temp_data_dir):
        (temp_data_dir / "version").write_text("Linux version 5.15.90.1-microsoft-standard-WSL2")
        probe = SystemProbe(proc_root=temp_data_dir)
        with patch("platform.system", return_value="Linux"):
            assert probe.detect_os() == OSFamily.WSL2

    def test_detect_os_macos_and_windows(self):
        probe = SystemProbe()
        with patch("platform.system", return_value="Darwin"):
            assert probe.detect_os() == OSFamily.MACOS
        with patch("platform.system", return_value="MINGW64_NT-10.0"):
            assert probe.detect_os() == OSFamily.WINDOWS
        with patch("platform.system", return_value="Plan9"):
            assert probe.detect_os() == OSFamily.UNKNOWN

    def test_normalize_arch(self):
        probe = SystemProbe()
        assert probe._normalize_arch("x86_64") == CPUArch.AMD64
        assert probe._normalize_arch("aarch64") == CPUArch.ARM64
        assert probe._normalize_arch("arm64") == CPUArch.ARM64
        assert probe._normalize_arch("riscv64") == CPUArch.UNKNOWN

    def test_total_ram_from_meminfo(self, temp_data_dir, sample_meminfo):
        (temp_data_dir / "meminfo").write_text(sample_meminfo)
        probe = SystemProbe(proc_root=temp_data_dir)
        assert probe.detect_total_ram_mb(OSFamily.LINUX) == 15932

    def test_total_ram_missing_meminfo_raises(self, temp_data_dir):
        probe = SystemProbe(proc_root=temp_data_dir)
        with pytest.raises(ProbeUnavailable):
            probe.detect_total_ram_mb(OSFamily.LINUX)

    @patch("subprocess.run")
    def test_total_ram_macos(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="17179869184\n")
        assert SystemProbe().detect_total_ram_mb(OSFamily.MACOS) == 16384

    def test_total_ram_unknown_os_raises(self):
        with pytest.raises(ProbeUnavailable) as exc_info:
            SystemProbe().detect_total_ram_mb(OSFamily.UNKNOWN)
        assert exc_info.value.kind == ErrorKind.PROBE_UNAVAILABLE

    def test_memory_usage_linux(self, temp_data_dir, sample_meminfo):
        (temp_data_dir / "meminfo").write_text(sample_meminfo)
        reading = SystemProbe(proc_root=temp_data_dir).memory_usage(OSFamily.LINUX)
        assert reading.total_mb == 15932
        assert reading.used_mb == 6495
        assert reading.swap_used_mb == 512

    def test_parse_vm_stat(self, sample_vm_stat):
        assert SystemProbe()._parse_vm_stat_used_mb(sample_vm_stat) == 2500

    def test_parse_swapusage(self):
        probe = SystemProbe()
        assert probe._parse_swapusage_used_mb("total = 2048.00M  used = 1024.50M  free = 1023.50M") == 1024
        assert probe._parse_swapusage_used_mb("total = 4.00G  used = 1.50G  free = 2.50G") == 1536
        assert probe._parse_swapusage_used_mb("") == 0

    def test_disk_free_walks_to_existing_parent(self, temp_data_dir):
        free = SystemProbe().disk_free_gb(temp_data_dir / "not" / "yet" / "created")
        assert free >= 0


class TestRuntimeProbe:
    def test_name_property(self):
        assert RuntimeProbe().name == "runtime"

    def test_parse_runtime_flavor(self):
        probe = RuntimeProbe()
        assert probe._parse_runtime_flavor("orbstack", "") == RuntimeFlavor.ORBSTACK
        assert probe._parse_runtime_flavor("colima", "") == RuntimeFlavor.COLIMA
        assert probe._parse_runtime_flavor("default", "Name: rancher-desktop") == RuntimeFlavor.RANCHER
        assert probe._parse_runtime_flavor("desktop-linux", "") == RuntimeFlavor.DOCKER_DESKTOP
        assert probe._parse_runtime_flavor("default", "Operating System: Docker Desktop") == RuntimeFlavor.DOCKER_DESKTOP
        assert probe._parse_runtime_flavor("default", "Operating System: Ubuntu 22.04") == RuntimeFlavor.DOCKER

    @patch("shutil.which", return_value=None)
    def test_no_docker_is_none(self, mock_which):
        assert RuntimeProbe().detect_runtime_flavor() == RuntimeFlavor.NONE

    @patch("subprocess.run")
    def test_runtime_running(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="")
        assert RuntimeProbe().runtime_running() is True
        mock_run.return_value = MagicMock(returncode=1, stdout="")
        assert RuntimeProbe().runtime_running() is False

    @patch("subprocess.run", side_effect=FileNotFoundError("docker"))
    def test_runtime_running_missing_binary(self, mock_run):
        assert RuntimeProbe().runtime_running() is False

    def test_competing_clusters_requires_live_cluster(self):
        responses = {
            "minikube status": (0, "host: Running\nkubelet: Running\n"),
            "kind get clusters": (0, "dev\n"),
            "kubectl --context kind-dev cluster-info": (1, ""),
            "kubectl config get-contexts -o name": (0, "docker-desktop\nk3d-lab\ncolima\n"),
            "kubectl --context docker-desktop cluster-info": (0, "Kubernetes control plane is running"),
            "kubectl --context colima cluster-info": (1, ""),
        }
        with patch("subprocess.run", side_effect=fake_run(responses)):
            competing = RuntimeProbe().detect_competing_clusters(RuntimeFlavor.DOCKER)
        assert competing == ["docker-desktop", "minikube"]

    def test_competing_clusters_reports_all_active(self):
        responses = {
            "minikube status": (0, "host: Running\n"),
            "kind get clusters": (0, "dev\n"),
            "kubectl --context kind-dev cluster-info": (0, ""),
            "kubectl config get-contexts -o name": (0, ""),
            "orb status": (0, "Running\n"),
        }
        with patch("subprocess.run", side_effect=fake_run(responses)):
            competing = RuntimeProbe().detect_competing_clusters(RuntimeFlavor.DOCKER)
        assert competing == ["kind", "minikube", "orbstack"]

    def test_own_orbstack_is_not_competing(self):
        responses = {"orb status": (0, "Running\n")}
        with patch("subprocess.run", side_effect=fake_run(responses)):
            assert RuntimeProbe().detect_competing_clusters(RuntimeFlavor.ORBSTACK) == []

    def test_find_available_port_skips_busy(self):
        probe = RuntimeProbe()
        with patch.object(probe, "port_in_use", side_effect=lambda port: port < 5002):
            assert probe.find_available_port(5000) == 5002

    def test_find_available_port_exhausted(self):
        probe = RuntimeProbe()
        with patch.object(probe, "port_in_use", return_value=True):
            with pytest.raises(OrchestratorError) as exc_info:
                probe.find_available_port(5000, attempts=3)
        assert exc_info.value.kind == ErrorKind.PORT_IN_USE

    @patch("subprocess.run")
    def test_pids_on_port(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="1234\n5678\n")
        assert RuntimeProbe().pids_on_port(5000) == [1234, 5678]


class TestCachedProfiler:
    def test_probe_runs_once_while_fresh(self, profiler, mock_runtime_probe):
        assert profiler.competing_clusters() == []
        assert profiler.competing_clusters() == []
        assert mock_runtime_probe.detect_competing_clusters.call_count == 1

    def test_probe_reruns_after_ttl(self, profiler, mock_system_probe, fake_clock):
        profiler.memory_usage()
        fake_clock.advance(31)
        profiler.memory_usage()
        assert mock_system_probe.memory_usage.call_count == 2

    def test_ttl_override(self, fake_clock, mock_system_probe, mock_runtime_probe):
        profiler = CachedProfiler(
            ProbeCache(clock=fake_clock),
            system=mock_system_probe,
            runtime=mock_runtime_probe,
            ttls={"memory": 5},
        )
        profiler.memory_usage()
        fake_clock.advance(6)
        profiler.memory_usage()
        assert mock_system_probe.memory_usage.call_count == 2

    def test_unavailable_probe_falls_back(self, profiler, mock_system_probe):
        mock_system_probe.detect_total_ram_mb.side_effect = ProbeUnavailable("total-ram", "no /proc")
        assert profiler.total_ram_mb() == FALLBACK_RAM_MB
        assert profiler.errors.last_error == ErrorKind.PROBE_UNAVAILABLE
        # The fallback is cached like a real answer
        profiler.total_ram_mb()
        assert mock_system_probe.detect_total_ram_mb.call_count == 1

    def test_invalidate_runtime_cascades(self, profiler, mock_runtime_probe):
        profiler.runtime_running()
        profiler.competing_clusters()
        profiler.invalidate_runtime()
        profiler.runtime_running()
        profiler.competing_clusters()
        assert mock_runtime_probe.runtime_running.call_count == 2
        assert mock_runtime_probe.detect_competing_clusters.call_count == 2

    def test_after_mutation_keeps_static_facts(self, profiler, mock_system_probe):
        profiler.total_ram_mb()
        profiler.memory_usage()
        profiler.after_mutation()
        profiler.total_ram_mb()
        profiler.memory_usage()
        assert mock_system_probe.detect_total_ram_mb.call_count == 1
        assert mock_system_probe.memory_usage.call_count == 2

    def test_memory_fallback_uses_total_ram(self, profiler, mock_system_probe):
        mock_system_probe.memory_usage.side_effect = ProbeUnavailable("memory-usage", "no vm_stat")
        reading = profiler.memory_usage()
        assert isinstance(reading, MemoryReading)
        assert reading.used_mb == 0
        assert reading.total_mb == 16384

    def test_available_port_cached(self, profiler, mock_runtime_probe):
        assert profiler.available_port(5000) == 5000
        profiler.available_port(5000)
        assert mock_runtime_probe.find_available_port.call_count == 1

    def test_facts(self, profiler):
        facts = profiler.facts()
        assert facts.os_family == OSFamily.LINUX
        assert facts.total_ram_gb == 16.0
        assert facts.runtime == RuntimeFlavor.DOCKER

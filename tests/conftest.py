"""Pytest configuration and shared fixtures."""

import pytest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock

from kubelab.collectors.profiler import CachedProfiler
from kubelab.collectors.runtime import RuntimeProbe
from kubelab.collectors.system import SystemProbe
from kubelab.data.cache import ProbeCache
from kubelab.data.models import CPUArch, MemoryReading, OSFamily, RuntimeFlavor
from kubelab.orchestrator.config import LabConfig, RunFlags, Settings
from kubelab.orchestrator.context import OrchestratorContext
from kubelab.orchestrator.registry import KubeContext


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_data_dir():
    """Create a temporary data directory for tests."""
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def mock_system_probe():
    """SystemProbe reporting a 16GB, 8 core Linux host."""
    probe = MagicMock(spec=SystemProbe)
    probe.detect_os.return_value = OSFamily.LINUX
    probe.detect_arch.return_value = CPUArch.AMD64
    probe.detect_total_ram_mb.return_value = 16384
    probe.detect_cpu_cores.return_value = 8
    probe.memory_usage.return_value = MemoryReading(used_mb=4096, total_mb=16384, swap_used_mb=0)
    probe.disk_free_gb.return_value = 100.0
    return probe


@pytest.fixture
def mock_runtime_probe():
    """RuntimeProbe with a running plain docker engine and no other clusters."""
    probe = MagicMock(spec=RuntimeProbe)
    probe.detect_runtime_flavor.return_value = RuntimeFlavor.DOCKER
    probe.runtime_running.return_value = True
    probe.detect_competing_clusters.return_value = []
    probe.find_available_port.side_effect = lambda start: start
    probe.pids_on_port.return_value = []
    probe.port_in_use.return_value = False
    return probe


@pytest.fixture
def profiler(fake_clock, mock_system_probe, mock_runtime_probe):
    return CachedProfiler(ProbeCache(clock=fake_clock), system=mock_system_probe, runtime=mock_runtime_probe)


@pytest.fixture
def context(temp_data_dir, profiler):
    """Fabricated orchestrator context rooted in a temporary directory."""
    return OrchestratorContext.build(
        settings=Settings(data_dir=str(temp_data_dir / "data")),
        lab_config=LabConfig(storage_path=temp_data_dir / "lab", cluster_name="lab"),
        flags=RunFlags(non_interactive=True),
        config_path=temp_data_dir / "kube-lab-config",
        profiler=profiler,
    )


@pytest.fixture
def mock_kube():
    kube = MagicMock(spec=KubeContext)
    kube.merge.return_value = True
    kube.use.return_value = True
    kube.restore.return_value = True
    kube.save.return_value = "previous-context"
    return kube


@pytest.fixture
def sample_meminfo():
    """Sample /proc/meminfo content."""
    return """MemTotal:       16314424 kB
MemFree:         1954308 kB
MemAvailable:    9663200 kB
Buffers:          402120 kB
Cached:          7112676 kB
SwapCached:         1024 kB
SwapTotal:       2097148 kB
SwapFree:        1572860 kB
"""


@pytest.fixture
def sample_vm_stat():
    """Sample macOS vm_stat output."""
    return """Mach Virtual Memory Statistics: (page size of 16384 bytes)
Pages free:                               12345.
Pages active:                            100000.
Pages inactive:                           98765.
Pages speculative:                         4321.
Pages throttled:                              0.
Pages wired down:                         50000.
Pages purgeable:                           1234.
"Translation faults":                  123456789.
Pages copy-on-write:                    1234567.
Pages occupied by compressor:             10000.
"""


@pytest.fixture
def sample_kubectl_nodes():
    """Sample output from kubectl get nodes --no-headers."""
    return """k3d-lab-server-0   Ready    control-plane,master   5m    v1.28.4+k3s1
k3d-lab-agent-0    Ready    <none>                 5m    v1.28.4+k3s1
"""

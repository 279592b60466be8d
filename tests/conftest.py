import threading
import time
import pytest
from pathlib import Path
from typing import List, Optional, Set
from hvc.config.models import AppConfig
from hvc.domain.models import EncodeJob, HostCapabilities, MediaAsset
from hvc.infrastructure.event_bus import EventBus
from hvc.infrastructure.ffmpeg import EncodeOutcome
from hvc.infrastructure.housekeeping import TEMP_SUFFIX

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def source_dir(tmp_path):
    """Creates the tree that gets converted."""
    d = tmp_path / "videos"
    d.mkdir()
    return d

@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "videos_backup"

@pytest.fixture
def make_config(source_dir, backup_dir):
    """Factory for an AppConfig rooted at the temporary source/backup dirs."""
    def _make(**general) -> AppConfig:
        return AppConfig(
            source_root=source_dir,
            backup_root=backup_dir,
            general={"verify_hw_encoders": False, **general},
        )
    return _make

@pytest.fixture
def no_gpu():
    return HostCapabilities()

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def recorded_events(event_bus):
    """Subscribes to every event type and records the stream in order."""
    from hvc.domain import events as ev
    seen: List = []
    for name in dir(ev):
        obj = getattr(ev, name)
        if isinstance(obj, type) and issubclass(obj, ev.Event) and obj is not ev.Event:
            event_bus.subscribe(obj, seen.append)
    return seen

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def dummy_videos(source_dir):
    """Three small 'videos' plus one in a subdirectory."""
    files = []
    for i in range(3):
        f = source_dir / f"video{i}.mov"
        f.write_bytes(b"source video bytes " * (100 + i))
        files.append(f)
    subdir = source_dir / "trip"
    subdir.mkdir()
    f = subdir / "beach.mp4"
    f.write_bytes(b"beach video bytes " * 120)
    files.append(f)
    return files

@pytest.fixture
def make_job(source_dir, backup_dir):
    """Builds an EncodeJob for an existing source file without a JobBuilder."""
    def _make(src: Path, job_id: str = "abcd1234", **fields) -> EncodeJob:
        rel = src.relative_to(source_dir)
        values = dict(
            job_id=job_id,
            input_path=src,
            backup_path=backup_dir / rel,
            temp_output_path=src.parent / f".{src.stem}.{job_id}{TEMP_SUFFIX}",
            final_output_path=src.with_suffix(".mp4"),
            effective_bitrate="3000k",
            source_size=src.stat().st_size,
        )
        values.update(fields)
        return EncodeJob(**values)
    return _make

# ============================================================================
# Fake encoder / prober
# ============================================================================

class FakeFFmpeg:
    """Stands in for FFmpegAdapter: writes a small output or fails on request.

    failing: encoder ids that exit non-zero ("libx265" for the CPU path).
    empty: encoder ids that exit 0 without writing anything.
    """

    def __init__(self, failing: Optional[Set[str]] = None, empty: Optional[Set[str]] = None,
                 payload: bytes = b"hevc", delay: float = 0.0):
        self.failing = set(failing or ())
        self.empty = set(empty or ())
        self.payload = payload
        self.delay = delay
        self.calls: List[tuple] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def encode(self, job, encoder_id, intent, shutdown_event=None) -> EncodeOutcome:
        label = encoder_id or "libx265"
        with self._lock:
            self.calls.append((job.input_path.name, label))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if label in self.failing:
                # A crashed encoder may leave a partial file behind
                job.temp_output_path.write_bytes(b"partial")
                return EncodeOutcome(encoder=label, returncode=1, output_tail="Error while encoding\n")
            if label not in self.empty:
                job.temp_output_path.write_bytes(self.payload)
            return EncodeOutcome(encoder=label, returncode=0)
        finally:
            with self._lock:
                self.active -= 1

@pytest.fixture
def fake_ffmpeg():
    return FakeFFmpeg()

@pytest.fixture
def fake_ffmpeg_factory():
    return FakeFFmpeg

class FakeProbe:
    """Stands in for FFprobeAdapter with per-name overrides."""

    def __init__(self, overrides: Optional[dict] = None, **defaults):
        self.overrides = overrides or {}
        self.defaults = {"codec": "h264", "bitrate_bps": 10_000_000, "height": 1080,
                         "width": 1920, "duration": 10.0, **defaults}
        self.probed: List[Path] = []

    def probe(self, path: Path, size_bytes: int) -> MediaAsset:
        self.probed.append(path)
        fields = {**self.defaults, **self.overrides.get(path.name, {})}
        return MediaAsset(path=path, size_bytes=size_bytes, **fields)

@pytest.fixture
def fake_probe_factory():
    return FakeProbe

# ============================================================================
# Pipeline assembly
# ============================================================================

@pytest.fixture
def build_orchestrator(event_bus, no_gpu):
    """Wires a real Orchestrator around fake ffmpeg/ffprobe adapters."""
    from hvc.infrastructure.file_scanner import FileScanner
    from hvc.pipeline.job_builder import JobBuilder, backup_root_for
    from hvc.pipeline.orchestrator import Orchestrator
    from hvc.pipeline.path_allocator import PathAllocator
    from hvc.pipeline.safe_apply import SafeApplyProtocol

    def _build(config, ffmpeg, probe, capabilities=None, shutdown_event=None):
        general = config.general
        allocator = PathAllocator()
        shutdown_event = shutdown_event or threading.Event()
        protocol = SafeApplyProtocol(
            ffmpeg,
            allocator,
            event_bus=event_bus,
            delete_source=general.delete_source,
            backup_verify=general.backup_verify,
            shutdown_event=shutdown_event,
        )
        return Orchestrator(
            config=config,
            event_bus=event_bus,
            file_scanner=FileScanner(general.extensions, exclude_dirs=[backup_root_for(config)]),
            ffprobe_adapter=probe,
            job_builder=JobBuilder(config, capabilities if capabilities is not None else no_gpu, allocator),
            protocol=protocol,
            shutdown_event=shutdown_event,
        )
    return _build

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )

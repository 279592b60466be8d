from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

TARGET_CODEC = "hevc"


class GpuVendor(str, Enum):
    NVIDIA = "nvidia"
    INTEL = "intel"
    AMD = "amd"


class EncoderChoice(str, Enum):
    AUTO = "auto"
    NVIDIA = "nvidia"
    INTEL = "intel"
    AMD = "amd"
    CPU = "cpu"


class QualityPreset(str, Enum):
    DEFAULT = "default"
    GPU_HQ = "gpu-hq"
    SMALLER = "smaller"
    FASTER = "faster"
    LOSSLESS = "lossless"


class Container(str, Enum):
    MP4 = "mp4"
    MKV = "mkv"

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @property
    def muxer(self) -> str:
        return "mp4" if self is Container.MP4 else "matroska"


class ErrorKind(str, Enum):
    BACKUP_FAILED = "backup_failed"
    ENCODE_FAILED = "encode_failed"
    PUBLISH_FAILED = "publish_failed"
    INTERRUPTED = "interrupted"  # Ctrl+C during processing
    UNEXPECTED = "unexpected"


class MediaAsset(BaseModel):
    """A discovered input file plus whatever ffprobe could tell about it."""

    model_config = ConfigDict(frozen=True)

    path: Path
    size_bytes: int
    codec: Optional[str] = None
    bitrate_bps: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    audio_bitrate_bps: Optional[int] = None
    creation_time: Optional[datetime] = None
    probe_error: Optional[str] = None

    @property
    def extension(self) -> str:
        return self.path.suffix.lower()

    @property
    def is_target_codec(self) -> bool:
        return (self.codec or "").lower() == TARGET_CODEC


class EncoderCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor: GpuVendor
    encoder_id: str
    available: bool


class HostCapabilities(BaseModel):
    """Result of probing the host once per session. Never mutated afterwards."""

    model_config = ConfigDict(frozen=True)

    encoders: FrozenSet[EncoderCapability] = frozenset()
    vendors: FrozenSet[GpuVendor] = frozenset()

    def is_available(self, encoder_id: str) -> bool:
        return any(c.encoder_id == encoder_id and c.available for c in self.encoders)

    @property
    def available_encoders(self) -> Tuple[str, ...]:
        return tuple(sorted(c.encoder_id for c in self.encoders if c.available))


class EncodeJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    input_path: Path
    backup_path: Path
    temp_output_path: Path
    final_output_path: Path
    chosen_encoder: Optional[str] = None  # None = CPU
    effective_bitrate: Optional[str] = None  # None for lossless
    audio_bitrate: str = "160k"
    preserve_timestamps: bool = True
    preset: QualityPreset = QualityPreset.DEFAULT
    container: Container = Container.MP4
    source_size: int = 0
    creation_time: Optional[datetime] = None


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    input_path: Path
    final_output_path: Optional[Path] = None
    success: bool = False
    used_gpu: bool = False
    backed_up: bool = False
    deleted: bool = False
    src_bytes: int = 0
    out_bytes: int = 0
    messages: Tuple[str, ...] = ()
    error_kind: Optional[ErrorKind] = None


class ConversionSummary(BaseModel):
    """Run-level totals. Only the dispatching thread calls merge()."""

    processed: int = 0
    encoded: int = 0
    gpu: int = 0
    cpu: int = 0
    skipped: int = 0
    backed_up: int = 0
    deleted: int = 0
    errors: int = 0
    source_bytes: int = 0
    output_bytes: int = 0
    total_files: int = 0

    def merge(self, result: JobResult) -> None:
        self.processed += 1
        if result.backed_up:
            self.backed_up += 1
        if result.deleted:
            self.deleted += 1
        if result.success:
            self.encoded += 1
            if result.used_gpu:
                self.gpu += 1
            else:
                self.cpu += 1
            self.source_bytes += result.src_bytes
            self.output_bytes += result.out_bytes
        else:
            self.errors += 1

    @property
    def bytes_saved(self) -> int:
        return self.source_bytes - self.output_bytes

    @property
    def percent_saved(self) -> float:
        if self.source_bytes <= 0:
            return 0.0
        return self.bytes_saved / self.source_bytes * 100.0


class DryRunEstimate(BaseModel):
    """Running totals for a dry run; nothing here touches the filesystem."""

    files: int = 0
    skipped: int = 0
    estimated_files: int = 0
    source_bytes: int = 0
    estimated_bytes: int = 0
    per_file: list = Field(default_factory=list)  # (Path, Optional[int])

    def add(self, asset: MediaAsset, estimated_bytes: Optional[int]) -> None:
        self.files += 1
        self.per_file.append((asset.path, estimated_bytes))
        if estimated_bytes is None:
            return
        # Only files with an estimate count toward the saved percentage
        self.estimated_files += 1
        self.source_bytes += asset.size_bytes
        self.estimated_bytes += estimated_bytes

    @property
    def percent_saved(self) -> float:
        if self.source_bytes <= 0:
            return 0.0
        return (self.source_bytes - self.estimated_bytes) / self.source_bytes * 100.0


class EncodeIntent(BaseModel):
    """What a quality preset asks of an encoder, independent of its flag names."""

    model_config = ConfigDict(frozen=True)

    speed: str  # "fast" | "medium" | "slow"
    rate_mode: str  # "bitrate" | "quality"
    quality: Optional[int] = None  # quantizer-like level for rate_mode="quality"
    ceiling: bool = False  # pair the target bitrate with a maxrate
    lookahead: int = 0
    b_frames: Optional[int] = None
    high_quality_tune: bool = False
    lossless: bool = False

from pathlib import Path
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from hvc.config.rate_control import parse_rate_value
from hvc.domain.models import Container, EncoderChoice, QualityPreset

MAX_JOBS = 8


class GeneralConfig(BaseModel):
    jobs: int = Field(default=2, ge=1, le=MAX_JOBS)
    encoder: EncoderChoice = EncoderChoice.AUTO
    preset: QualityPreset = QualityPreset.DEFAULT
    fallback_bitrate: str = "3000k"
    audio_bitrate: str = "160k"
    container: Container = Container.MP4
    skip_hevc: bool = True
    preserve_timestamps: bool = True
    delete_source: bool = True
    dry_run: bool = False
    backup_verify: Literal["size", "hash"] = "size"
    verify_hw_encoders: bool = True
    use_exif: bool = False
    extensions: List[str] = Field(
        default_factory=lambda: [".mp4", ".mov", ".m4v", ".avi", ".mkv", ".wmv", ".mts", ".m2ts", ".3gp"]
    )
    min_size_bytes: int = Field(default=0, ge=0)
    log_path: Optional[str] = None
    debug: bool = False

    @field_validator("fallback_bitrate", "audio_bitrate")
    @classmethod
    def validate_rate(cls, v: str) -> str:
        parse_rate_value(v)
        return str(v).strip()

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]


class ToolsConfig(BaseModel):
    """Binary names or absolute paths; locating them is up to the caller."""

    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    exiftool: str = "exiftool"


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    source_root: Optional[Path] = None
    backup_root: Optional[Path] = None
    output_root: Optional[Path] = None  # None = write next to the source
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    @model_validator(mode="after")
    def validate_roots(self):
        if self.source_root and self.backup_root:
            src = Path(self.source_root).expanduser().resolve()
            bak = Path(self.backup_root).expanduser().resolve()
            if src == bak:
                raise ValueError("backup_root must differ from source_root")
        return self

    def validate_for_run(self) -> None:
        """Checks that only matter once we actually convert."""
        if self.source_root is None:
            raise ValueError("source_root is not set (CLI argument or config).")
        if not Path(self.source_root).is_dir():
            raise ValueError(f"source_root does not exist: {self.source_root}")
        if self.backup_root is None and not self.general.dry_run:
            raise ValueError("backup_root is required unless running with --dry-run.")

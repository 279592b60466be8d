import logging
import uuid
from pathlib import Path
from typing import Optional
from hvc.config.models import AppConfig
from hvc.config.rate_control import plan_bitrate
from hvc.domain.models import EncodeJob, HostCapabilities, MediaAsset, QualityPreset
from hvc.infrastructure.housekeeping import TEMP_SUFFIX
from hvc.infrastructure.timestamps import resolve_creation_time
from hvc.pipeline.encoder_select import encoder_for_preset, select_encoder
from hvc.pipeline.path_allocator import PathAllocator


def backup_root_for(config: AppConfig) -> Path:
    """Configured backup root; dry runs without one show a sibling '<source>_backup'."""
    if config.backup_root is not None:
        return Path(config.backup_root)
    source_root = Path(config.source_root)
    return source_root.with_name(f"{source_root.name}_backup")


class JobBuilder:
    """Turns a probed MediaAsset into an immutable EncodeJob."""

    def __init__(self, config: AppConfig, capabilities: HostCapabilities, allocator: PathAllocator):
        self.config = config
        self.general = config.general
        self.allocator = allocator
        selected = select_encoder(self.general.encoder, capabilities)
        self.encoder = encoder_for_preset(selected, self.general.preset)
        if selected and self.encoder is None:
            logging.getLogger(__name__).warning(
                f"{selected} has no true lossless mode; lossless jobs use libx265"
            )
        self.source_root = Path(config.source_root)
        self.backup_root = backup_root_for(config)
        self.output_root = Path(config.output_root) if config.output_root else None

    def _relative(self, path: Path) -> Path:
        try:
            return path.relative_to(self.source_root)
        except ValueError:
            return Path(path.name)

    def plan(self, asset: MediaAsset) -> Optional[str]:
        if self.general.preset == QualityPreset.LOSSLESS:
            return None
        return plan_bitrate(asset.bitrate_bps, asset.height, self.general.preset, self.general.fallback_bitrate)

    def build(self, asset: MediaAsset) -> EncodeJob:
        rel_path = self._relative(asset.path)
        job_id = uuid.uuid4().hex[:8]

        output_dir = (self.output_root / rel_path.parent) if self.output_root else asset.path.parent
        container = self.general.container
        desired = output_dir / f"{asset.path.stem}{container.extension}"

        return EncodeJob(
            job_id=job_id,
            input_path=asset.path,
            backup_path=self.allocator.preview(self.backup_root / rel_path),
            temp_output_path=output_dir / f".{asset.path.stem}.{job_id}{TEMP_SUFFIX}",
            final_output_path=self.allocator.preview(desired),
            chosen_encoder=self.encoder,
            effective_bitrate=self.plan(asset),
            audio_bitrate=self.general.audio_bitrate,
            preserve_timestamps=self.general.preserve_timestamps,
            preset=self.general.preset,
            container=container,
            source_size=asset.size_bytes,
            creation_time=resolve_creation_time(asset) if self.general.preserve_timestamps else None,
        )

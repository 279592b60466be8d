import os
from datetime import datetime
from pathlib import Path
from typing import Optional, TYPE_CHECKING
from hvc.domain.models import MediaAsset

if TYPE_CHECKING:
    from hvc.infrastructure.exif_tool import ExifToolAdapter


def resolve_creation_time(asset: MediaAsset) -> Optional[datetime]:
    """Container creation_time tag, else the file's modification time."""
    if asset.creation_time is not None:
        return asset.creation_time
    try:
        mtime = asset.path.stat().st_mtime
    except OSError:
        return None
    return datetime.fromtimestamp(mtime).astimezone()


def apply_timestamp(target: Path, when: datetime, exif: Optional["ExifToolAdapter"] = None) -> None:
    """Stamps target with `when` (filesystem times, plus container tags via ExifTool).

    Tags are written first because exiftool rewrites the file and would
    otherwise reset its modification time.
    """
    if exif is not None:
        exif.write_creation_date(target, when)
    ts = when.timestamp()
    os.utime(target, (ts, ts))

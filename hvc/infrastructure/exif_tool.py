import exiftool
import threading
from datetime import datetime, timezone
from pathlib import Path

# QuickTime dates are stored in UTC by convention
QUICKTIME_DATE_TAGS = (
    "QuickTime:CreateDate",
    "QuickTime:ModifyDate",
    "QuickTime:TrackCreateDate",
    "QuickTime:TrackModifyDate",
    "QuickTime:MediaCreateDate",
    "QuickTime:MediaModifyDate",
)


class ExifToolAdapter:
    """Wrapper around pyexiftool for writing container date tags.

    One exiftool process is shared by all workers; calls are serialized.
    """

    def __init__(self, executable: str = "exiftool"):
        self.et = exiftool.ExifTool(executable=executable)
        self._lock = threading.Lock()

    def start(self) -> None:
        if not self.et.running:
            self.et.run()

    def stop(self) -> None:
        if self.et.running:
            self.et.terminate()

    def write_creation_date(self, target: Path, when: datetime) -> None:
        """Writes the QuickTime create/modify dates of target."""
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc).replace(tzinfo=None)
        stamp = when.strftime("%Y:%m:%d %H:%M:%S")

        params = [f"-{tag}={stamp}" for tag in QUICKTIME_DATE_TAGS]
        params += ["-overwrite_original", str(target)]

        with self._lock:
            self.start()
            self.et.execute(*params)
            status = getattr(self.et, "last_status", 0)
        if status:
            raise RuntimeError(f"exiftool exited with status {status} for {target.name}")

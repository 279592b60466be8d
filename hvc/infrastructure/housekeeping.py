import logging
import os
from pathlib import Path

TEMP_SUFFIX = ".hvctmp"


class HousekeepingService:
    """Removes temp outputs left behind by an interrupted or crashed run."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_temp_files(self, directory: Path) -> int:
        """Recursively removes all *.hvctmp files; returns how many were removed."""
        removed = 0
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file.endswith(TEMP_SUFFIX):
                    try:
                        (Path(root) / file).unlink()
                        removed += 1
                    except OSError as e:
                        self.logger.warning(f"HOUSEKEEPING: could not remove {file}: {e}")
        if removed:
            self.logger.info(f"HOUSEKEEPING: removed {removed} stale temp file(s) in {directory}")
        return removed

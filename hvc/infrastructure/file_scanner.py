import os
from pathlib import Path
from typing import Iterable, List, Generator, Optional


class FileScanner:
    """Recursively scans for video files below a source root."""

    def __init__(self, extensions: List[str], min_size_bytes: int = 0, exclude_dirs: Optional[Iterable[Path]] = None):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.min_size_bytes = min_size_bytes
        self.exclude_dirs = {Path(d).resolve() for d in (exclude_dirs or [])}

    def scan(self, root_dir: Path) -> Generator[Path, None, None]:
        """Yields candidate paths in a deterministic order."""
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            # Never descend into the backup or output trees
            dirs[:] = sorted(
                d for d in dirs
                if not d.startswith(".") and (root_path / d).resolve() not in self.exclude_dirs
            )
            files.sort()

            for file_name in files:
                # Hidden files include our own in-progress temp outputs
                if file_name.startswith("."):
                    continue
                file_path = root_path / file_name
                if file_path.suffix.lower() not in self.extensions:
                    continue

                try:
                    if file_path.stat().st_size < self.min_size_bytes:
                        continue
                except OSError:
                    # Skip files we can't access
                    continue
                yield file_path

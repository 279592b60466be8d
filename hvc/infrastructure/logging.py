import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = "conversion.log"


def setup_logging(
    log_dir: Optional[Path],
    debug: bool = False,
    log_path: Optional[Path] = None,
) -> logging.Logger:
    """
    Setup logging configuration for HVC.

    The log is append-only: every run adds lines to the same conversion.log.
    With neither log_dir nor log_path (dry runs) nothing is written to disk and
    records go to stderr instead.

    Args:
        log_dir: Directory that receives conversion.log (usually the backup root)
        debug: If True, enable DEBUG level logging (ffmpeg command lines etc.)
        log_path: Optional explicit log file path (overrides log_dir)
    """
    level = logging.DEBUG if debug else logging.INFO

    log_file: Optional[Path] = None
    if log_path:
        log_file = Path(log_path)
    elif log_dir:
        log_file = Path(log_dir) / LOG_FILE_NAME

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    else:
        handler = logging.StreamHandler()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[handler],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    target = log_file if log_file is not None else "stderr"
    logger.info(f"Logging initialized: {target} (debug={'ON' if debug else 'OFF'})")

    return logger

class HvcError(RuntimeError):
    """Base error type."""


class ToolMissingError(HvcError):
    """A required external binary (ffmpeg/ffprobe) is not on PATH."""


class ProbeError(HvcError):
    """ffprobe execution/parsing problem."""

"""Run summaries: the execute-mode summary line and dry-run size estimates."""

from typing import Optional
from hvc.config.rate_control import parse_rate_value
from hvc.domain.models import ConversionSummary, DryRunEstimate


def format_size(size: float) -> str:
    negative = size < 0
    size = abs(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            text = f"{size:.1f}{unit}"
            break
        size /= 1024.0
    else:
        text = f"{size:.1f}TB"
    return f"-{text}" if negative else text


def estimate_output_bytes(
    duration_s: Optional[float],
    video_rate: Optional[str],
    audio_rate: Optional[str],
) -> Optional[int]:
    """duration * (video + audio bitrate) / 8, or None when duration or video rate is unknown."""
    if not duration_s or duration_s <= 0 or not video_rate:
        return None
    audio_bps = parse_rate_value(audio_rate) if audio_rate else 0
    return int(duration_s * (parse_rate_value(video_rate) + audio_bps) / 8)


def render_summary_line(summary: ConversionSummary) -> str:
    return (
        f"Files: {summary.total_files} | "
        f"Encoded: {summary.encoded} (GPU {summary.gpu}, CPU {summary.cpu}) | "
        f"Skipped (HEVC): {summary.skipped} | "
        f"Backups: {summary.backed_up} | "
        f"Deleted: {summary.deleted} | "
        f"Errors: {summary.errors} | "
        f"Source: {format_size(summary.source_bytes)} | "
        f"Output: {format_size(summary.output_bytes)} | "
        f"Saved: {format_size(summary.bytes_saved)} ({summary.percent_saved:.1f}%)"
    )


def render_estimate_line(estimate: DryRunEstimate) -> str:
    return (
        f"[DRY-RUN] Files: {estimate.files} | "
        f"Skipped (HEVC): {estimate.skipped} | "
        f"Estimated: {estimate.estimated_files} | "
        f"Source: {format_size(estimate.source_bytes)} | "
        f"Est. output: {format_size(estimate.estimated_bytes)} | "
        f"Est. saved: {estimate.percent_saved:.1f}%"
    )

import subprocess
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from hvc.domain.errors import ProbeError
from hvc.domain.models import MediaAsset


class FFprobeAdapter:
    """Wrapper around ffprobe to extract container and stream information."""

    def __init__(self, binary: str = "ffprobe"):
        self.binary = binary

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        try:
            number = int(float(value))
        except (TypeError, ValueError):
            return None
        return number if number > 0 else None

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        """Parses '12.5' or matroska style 'HH:MM:SS.fff' duration tags."""
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            pass
        parts = text.split(":")
        if len(parts) not in (2, 3):
            return 0.0
        try:
            parts_f = [float(p) for p in parts]
        except ValueError:
            return 0.0
        if len(parts_f) == 2:
            minutes, seconds = parts_f
            return minutes * 60 + seconds
        hours, minutes, seconds = parts_f
        return hours * 3600 + minutes * 60 + seconds

    @staticmethod
    def _parse_creation_time(value: Any) -> Optional[datetime]:
        if not value:
            return None
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
        # Python < 3.11 rejects more than six fractional digits
        if "." in text:
            head, _, tail = text.partition(".")
            digits = "".join(ch for ch in tail if ch.isdigit())
            zone = tail[len(digits):]
            try:
                return datetime.fromisoformat(f"{head}.{digits[:6].ljust(6, '0')}{zone}")
            except ValueError:
                return None
        return None

    def run(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and returns the raw JSON document."""
        cmd = [
            self.binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, encoding="utf-8", errors="replace")
        except OSError as e:
            raise ProbeError(f"ffprobe could not be executed for {file_path}: {e}") from e
        if result.returncode != 0:
            raise ProbeError(f"ffprobe failed for {file_path}: {result.stderr}")

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"ffprobe output was not valid JSON for {file_path}: {e}") from e

    def get_stream_info(self, file_path: Path) -> Dict[str, Any]:
        """Probes a file and extracts the fields the pipeline needs."""
        data = self.run(file_path)
        streams = data.get("streams", []) or []

        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise ProbeError(f"No video stream found in {file_path}")
        audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

        fmt = data.get("format", {}) or {}
        fmt_tags = fmt.get("tags", {}) or {}

        # Duration fallback order: format.duration, format tags, stream.duration, stream tags
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            duration = self._parse_duration_tag(fmt_tags.get("DURATION") or fmt_tags.get("duration"))
        if duration <= 0:
            duration = self._to_float(video_stream.get("duration"))
        if duration <= 0:
            tags = video_stream.get("tags", {}) or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))

        # Overall bitrate: format.bit_rate, then video stream, then size/duration
        bitrate = self._to_int(fmt.get("bit_rate")) or self._to_int(video_stream.get("bit_rate"))
        if bitrate is None:
            size = self._to_float(fmt.get("size"))
            if size > 0 and duration > 0:
                bitrate = int(size * 8 / duration)

        creation_raw = fmt_tags.get("creation_time") or (video_stream.get("tags", {}) or {}).get("creation_time")

        return {
            "codec": video_stream.get("codec_name"),
            "width": self._to_int(video_stream.get("width")),
            "height": self._to_int(video_stream.get("height")),
            "bitrate": bitrate,
            "duration": duration if duration > 0 else None,
            "audio_bitrate": self._to_int(audio_stream.get("bit_rate")) if audio_stream else None,
            "creation_time": self._parse_creation_time(creation_raw),
        }

    def probe(self, file_path: Path, size_bytes: int) -> MediaAsset:
        """Builds a MediaAsset; a failed probe yields an asset with only path and size."""
        try:
            info = self.get_stream_info(file_path)
        except ProbeError as e:
            return MediaAsset(path=file_path, size_bytes=size_bytes, probe_error=str(e))
        return MediaAsset(
            path=file_path,
            size_bytes=size_bytes,
            codec=info["codec"],
            bitrate_bps=info["bitrate"],
            width=info["width"],
            height=info["height"],
            duration=info["duration"],
            audio_bitrate_bps=info["audio_bitrate"],
            creation_time=info["creation_time"],
        )

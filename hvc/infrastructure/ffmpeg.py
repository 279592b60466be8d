import subprocess
import logging
import time
import threading
import queue
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from hvc.config.rate_control import parse_rate_value
from hvc.domain.models import EncodeIntent, EncodeJob
from hvc.infrastructure.capabilities import CPU_ENCODER

OUTPUT_TAIL_LINES = 20

_NVENC_PRESETS = {"fast": "p2", "medium": "p5", "slow": "p7"}
_QSV_PRESETS = {"fast": "veryfast", "medium": "medium", "slow": "veryslow"}
_AMF_QUALITY = {"fast": "speed", "medium": "balanced", "slow": "quality"}
_X265_PRESETS = {"fast": "fast", "medium": "medium", "slow": "slow"}


@dataclass(frozen=True)
class EncodeOutcome:
    """What one encoder attempt produced. The adapter never raises for a bad exit."""

    encoder: str
    returncode: int
    output_tail: str = ""
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.interrupted


def _kbps(bps: int) -> str:
    return f"{max(1, bps // 1000)}k"


def _ceiling_args(bitrate: Optional[str], factor: float) -> List[str]:
    if not bitrate:
        return []
    target = parse_rate_value(bitrate)
    return ["-maxrate", _kbps(int(target * factor)), "-bufsize", _kbps(target * 2)]


def intent_args(encoder_id: Optional[str], intent: EncodeIntent, bitrate: Optional[str]) -> List[str]:
    """Renders a preset intent into encoder-specific ffmpeg arguments."""
    # Quality mode caps at the planned rate itself, bitrate mode allows 1.5x peaks
    ceiling_factor = 1.0 if intent.rate_mode == "quality" else 1.5
    quality = str(intent.quality) if intent.quality is not None else None
    args: List[str] = []

    if encoder_id == "hevc_nvenc":
        if intent.lossless:
            return ["-preset", "p7", "-tune", "lossless", "-rc", "constqp", "-qp", "0"]
        args += ["-preset", _NVENC_PRESETS[intent.speed]]
        if intent.high_quality_tune:
            args += ["-tune", "hq"]
        if intent.rate_mode == "quality":
            args += ["-rc", "vbr", "-cq", quality, "-b:v", "0"]
        else:
            args += ["-rc", "vbr", "-b:v", bitrate]
        if intent.ceiling:
            args += _ceiling_args(bitrate, ceiling_factor)
        if intent.lookahead:
            args += ["-rc-lookahead", str(intent.lookahead), "-spatial_aq", "1"]
        if intent.b_frames is not None:
            args += ["-bf", str(intent.b_frames), "-b_ref_mode", "middle"]
        return args

    if encoder_id == "hevc_qsv":
        if intent.lossless:
            # Closest QSV gets; JobBuilder routes lossless jobs to libx265 instead
            return ["-preset", "veryslow", "-global_quality", "1"]
        args += ["-preset", _QSV_PRESETS[intent.speed]]
        if intent.rate_mode == "quality":
            args += ["-global_quality", quality]
        else:
            args += ["-b:v", bitrate]
        if intent.ceiling:
            args += _ceiling_args(bitrate, ceiling_factor)
        if intent.lookahead:
            args += ["-look_ahead", "1", "-look_ahead_depth", str(intent.lookahead)]
        if intent.b_frames is not None:
            args += ["-bf", str(intent.b_frames)]
        return args

    if encoder_id == "hevc_amf":
        if intent.lossless:
            return ["-quality", "quality", "-rc", "cqp", "-qp_i", "0", "-qp_p", "0"]
        args += ["-quality", _AMF_QUALITY[intent.speed]]
        if intent.rate_mode == "quality":
            args += ["-rc", "cqp", "-qp_i", quality, "-qp_p", quality]
        elif intent.ceiling:
            args += ["-rc", "vbr_peak", "-b:v", bitrate]
            args += _ceiling_args(bitrate, ceiling_factor)
        else:
            args += ["-rc", "cbr", "-b:v", bitrate]
        if intent.lookahead:
            args += ["-preanalysis", "1"]
        return args

    # libx265
    x265_params: List[str] = []
    args += ["-preset", _X265_PRESETS[intent.speed]]
    if intent.lossless:
        x265_params.append("lossless=1")
    elif intent.rate_mode == "quality":
        args += ["-crf", quality]
    else:
        args += ["-b:v", bitrate]
    if intent.ceiling and not intent.lossless:
        args += _ceiling_args(bitrate, ceiling_factor)
    if intent.lookahead:
        x265_params.append(f"rc-lookahead={intent.lookahead}")
    if intent.b_frames is not None:
        x265_params.append(f"bframes={intent.b_frames}")
    if x265_params:
        args += ["-x265-params", ":".join(x265_params)]
    return args


class FFmpegAdapter:
    """Runs one ffmpeg encode per call and reports the outcome."""

    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary
        self.logger = logging.getLogger(__name__)

    def build_command(self, job: EncodeJob, encoder_id: Optional[str], intent: EncodeIntent) -> List[str]:
        """Constructs the ffmpeg command line; encoder_id None selects libx265."""
        bitrate = None if intent.lossless else job.effective_bitrate

        cmd = [
            self.binary,
            "-hide_banner",
            "-nostdin",
            "-y",  # Temp path is ours; overwrite leftovers
            "-i", str(job.input_path),
            "-map", "0:v:0",
            "-map", "0:a?",
            "-c:v", encoder_id or CPU_ENCODER,
        ]
        cmd.extend(intent_args(encoder_id, intent, bitrate))
        cmd.extend(["-c:a", "aac", "-b:a", job.audio_bitrate])
        cmd.extend(["-map_metadata", "0"])
        if job.container.value == "mp4":
            cmd.extend(["-tag:v", "hvc1", "-movflags", "+faststart+use_metadata_tags"])

        # Temp suffix says nothing about the format, so force the muxer
        cmd.extend(["-f", job.container.muxer, str(job.temp_output_path)])
        return cmd

    def encode(
        self,
        job: EncodeJob,
        encoder_id: Optional[str],
        intent: EncodeIntent,
        shutdown_event: Optional[threading.Event] = None,
    ) -> EncodeOutcome:
        """Executes one attempt and blocks until ffmpeg exits."""
        label = encoder_id or CPU_ENCODER
        filename = job.input_path.name
        start_time = time.monotonic()
        cmd = self.build_command(job, encoder_id, intent)
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                # Tags are echoed as raw bytes in whatever encoding the camera used
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            return EncodeOutcome(encoder=label, returncode=-1, output_tail=f"failed to start ffmpeg: {e}")

        tail: "deque[str]" = deque(maxlen=OUTPUT_TAIL_LINES)
        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            try:
                if process.stdout:
                    for line in process.stdout:
                        output_queue.put(line)
            finally:
                output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        while True:
            if shutdown_event is not None and shutdown_event.is_set():
                self.logger.info(f"FFMPEG_INTERRUPTED: {filename} ({label})")
                self._terminate(process)
                return EncodeOutcome(
                    encoder=label,
                    returncode=process.returncode if process.returncode is not None else -1,
                    output_tail="".join(tail),
                    interrupted=True,
                )

            try:
                # Short timeout only so the shutdown flag is noticed
                line = output_queue.get(timeout=0.2)
            except queue.Empty:
                if process.poll() is not None and not reader_thread.is_alive():
                    break
                continue

            if line is None:
                break
            tail.append(line)

        process.wait()
        elapsed = time.monotonic() - start_time
        self.logger.debug(
            f"FFMPEG_END: {filename} encoder={label} code={process.returncode} elapsed={elapsed:.2f}s"
        )
        return EncodeOutcome(encoder=label, returncode=process.returncode, output_tail="".join(tail))

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

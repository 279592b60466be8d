"""Safe apply protocol: runs one EncodeJob end to end.

Step order for a job:

    BackedUp -> Encoding(GPU)? -> Encoding(CPU)? -> Published
             -> (SourceDeleted) -> (TimestampApplied) -> Done

Any step may end the job as Failed instead. The source is only ever deleted
after a verified backup exists and the encoded output sits at its final path;
every other failure leaves the source exactly where it was.

`apply()` never raises for a per-job failure. It always returns a JobResult
whose `messages` hold one human-readable line per step.
"""

import hashlib
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

from hvc.domain.events import EncoderFallback, JobStarted
from hvc.domain.models import EncodeJob, ErrorKind, JobResult
from hvc.infrastructure.event_bus import EventBus
from hvc.infrastructure.ffmpeg import EncodeOutcome, FFmpegAdapter
from hvc.infrastructure.timestamps import apply_timestamp
from hvc.pipeline.encoder_select import preset_intent
from hvc.pipeline.path_allocator import PathAllocator

if TYPE_CHECKING:
    from hvc.infrastructure.exif_tool import ExifToolAdapter


def hash_file(path: Path, chunk_size: int = 8 * 1024 * 1024) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class _JobLog:
    """Collects per-job messages and mirrors each one to the log file."""

    def __init__(self, job: EncodeJob, logger: logging.Logger):
        self.job = job
        self.logger = logger
        self.messages: List[str] = []

    def info(self, tag: str, text: str) -> None:
        self.messages.append(text)
        self.logger.info(f"{tag}: {self.job.input_path.name} {text}")

    def warning(self, tag: str, text: str) -> None:
        self.messages.append(f"WARNING: {text}")
        self.logger.warning(f"{tag}: {self.job.input_path.name} {text}")

    def error(self, tag: str, text: str) -> None:
        self.messages.append(f"ERROR: {text}")
        self.logger.error(f"{tag}: {self.job.input_path.name} {text}")


class SafeApplyProtocol:
    def __init__(
        self,
        ffmpeg_adapter: FFmpegAdapter,
        allocator: PathAllocator,
        event_bus: Optional[EventBus] = None,
        exif_adapter: Optional["ExifToolAdapter"] = None,
        delete_source: bool = True,
        backup_verify: str = "size",
        shutdown_event: Optional[threading.Event] = None,
    ):
        self.ffmpeg_adapter = ffmpeg_adapter
        self.allocator = allocator
        self.event_bus = event_bus
        self.exif_adapter = exif_adapter
        self.delete_source = delete_source
        self.backup_verify = backup_verify
        self.shutdown_event = shutdown_event
        self.logger = logging.getLogger(__name__)

    def _publish(self, event) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event)

    @staticmethod
    def strategies(job: EncodeJob) -> List[Optional[str]]:
        """Encoders to try in order. None is the CPU encoder and always comes last."""
        if job.chosen_encoder:
            return [job.chosen_encoder, None]
        return [None]

    def apply(self, job: EncodeJob) -> JobResult:
        log = _JobLog(job, self.logger)
        try:
            return self._run(job, log)
        except Exception as e:
            # Anything unforeseen still must not take the source with it
            _remove_quietly(job.temp_output_path)
            log.error("JOB_EXCEPTION", f"unexpected error: {e}")
            return self._result(job, log, error_kind=ErrorKind.UNEXPECTED)

    def _result(self, job: EncodeJob, log: _JobLog, **fields) -> JobResult:
        fields.setdefault("src_bytes", job.source_size)
        return JobResult(
            job_id=job.job_id,
            input_path=job.input_path,
            messages=tuple(log.messages),
            **fields,
        )

    def _run(self, job: EncodeJob, log: _JobLog) -> JobResult:
        self._publish(JobStarted(job=job))

        # 1. Backup
        backup_path = self._backup(job, log)
        if backup_path is None:
            return self._result(job, log, error_kind=ErrorKind.BACKUP_FAILED)

        # 2-3. Encode, hardware first then CPU
        outcome = self._encode(job, log)
        if outcome is None or not outcome.ok:
            _remove_quietly(job.temp_output_path)
            kind = ErrorKind.INTERRUPTED if outcome is not None and outcome.interrupted else ErrorKind.ENCODE_FAILED
            log.error("JOB_FAILED", "no encoder succeeded; source left untouched")
            return self._result(job, log, backed_up=True, error_kind=kind)
        used_gpu = outcome.encoder == job.chosen_encoder and job.chosen_encoder is not None

        # 4. Publish
        final_path = self._publish_output(job, log)
        if final_path is None:
            return self._result(
                job, log, backed_up=True, used_gpu=used_gpu, error_kind=ErrorKind.PUBLISH_FAILED
            )
        out_bytes = final_path.stat().st_size

        # 5. Delete source, only now that the output is in place
        deleted = False
        if self.delete_source:
            try:
                job.input_path.unlink()
                deleted = True
                log.info("DELETE_OK", "source deleted")
            except OSError as e:
                log.warning("DELETE_WARN", f"could not delete source, keeping it: {e}")

        # 6. Timestamp carry-over
        if job.preserve_timestamps:
            self._carry_timestamp(job, final_path, log)

        return self._result(
            job,
            log,
            final_output_path=final_path,
            success=True,
            used_gpu=used_gpu,
            backed_up=True,
            deleted=deleted,
            out_bytes=out_bytes,
        )

    def _backup(self, job: EncodeJob, log: _JobLog) -> Optional[Path]:
        backup_path: Optional[Path] = None
        try:
            backup_path = self.allocator.reserve(job.backup_path)
            shutil.copy2(job.input_path, backup_path)
            src_size = job.input_path.stat().st_size
            bak_size = backup_path.stat().st_size
            if src_size != bak_size:
                raise OSError(f"size mismatch (source={src_size}, backup={bak_size})")
            if self.backup_verify == "hash" and hash_file(job.input_path) != hash_file(backup_path):
                raise OSError("sha256 mismatch between source and backup")
        except OSError as e:
            if backup_path is not None:
                _remove_quietly(backup_path)
            log.error("BACKUP_FAIL", f"backup failed, nothing else attempted: {e}")
            return None
        log.info("BACKUP_OK", f"backed up to {backup_path}")
        return backup_path

    def _encode(self, job: EncodeJob, log: _JobLog) -> Optional[EncodeOutcome]:
        outcome: Optional[EncodeOutcome] = None
        job.temp_output_path.parent.mkdir(parents=True, exist_ok=True)
        for encoder_id in self.strategies(job):
            intent = preset_intent(encoder_id, job.preset)
            label = encoder_id or "libx265 (CPU)"
            rate = "lossless" if intent.lossless else job.effective_bitrate
            log.info("ENCODE_START", f"encoding with {label} @ {rate}")

            outcome = self.ffmpeg_adapter.encode(job, encoder_id, intent, shutdown_event=self.shutdown_event)
            if outcome.interrupted:
                _remove_quietly(job.temp_output_path)
                log.warning("ENCODE_INTERRUPTED", f"{label} stopped by shutdown request")
                return outcome

            if outcome.ok and self._temp_is_valid(job):
                log.info("ENCODE_OK", f"{label} finished")
                return outcome

            _remove_quietly(job.temp_output_path)
            if outcome.ok:
                # Exit 0 without a usable file is still a failed attempt
                outcome = EncodeOutcome(encoder=outcome.encoder, returncode=-2, output_tail=outcome.output_tail)
                reason = "produced no output"
            else:
                reason = f"exited with code {outcome.returncode}"
            tail = outcome.output_tail.strip().splitlines()[-1:] or [""]
            if encoder_id is not None:
                log.warning("ENCODE_FAIL", f"{label} {reason}, falling back to CPU: {tail[0]}")
                self._publish(EncoderFallback(job=job, encoder=encoder_id, returncode=outcome.returncode))
            else:
                log.error("ENCODE_FAIL", f"{label} {reason}: {tail[0]}")
        return outcome

    @staticmethod
    def _temp_is_valid(job: EncodeJob) -> bool:
        try:
            return job.temp_output_path.stat().st_size > 0
        except OSError:
            return False

    def _publish_output(self, job: EncodeJob, log: _JobLog) -> Optional[Path]:
        final_path: Optional[Path] = None
        try:
            temp_size = job.temp_output_path.stat().st_size
            final_path = self.allocator.reserve(job.final_output_path)
            os.replace(job.temp_output_path, final_path)
            published_size = final_path.stat().st_size
            if published_size != temp_size:
                raise OSError(f"size mismatch after move (expected={temp_size}, got={published_size})")
        except OSError as e:
            _remove_quietly(job.temp_output_path)
            if final_path is not None:
                _remove_quietly(final_path)
            log.error("PUBLISH_FAIL", f"could not publish output, source kept: {e}")
            return None
        if final_path != job.final_output_path:
            log.info("PUBLISH_OK", f"{job.final_output_path.name} was taken, wrote {final_path}")
        else:
            log.info("PUBLISH_OK", f"wrote {final_path}")
        return final_path

    def _carry_timestamp(self, job: EncodeJob, final_path: Path, log: _JobLog) -> None:
        if job.creation_time is None:
            log.warning("TIMESTAMP_WARN", "no creation time known, output keeps current time")
            return
        try:
            apply_timestamp(final_path, job.creation_time, exif=self.exif_adapter)
        except Exception as e:
            log.warning("TIMESTAMP_WARN", f"could not apply creation time: {e}")
            return
        log.info("TIMESTAMP_OK", f"creation time set to {job.creation_time.isoformat()}")

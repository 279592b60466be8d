import concurrent.futures
import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from hvc.config.models import AppConfig
from hvc.domain.events import (
    DiscoveryFinished,
    DryRunPlanned,
    JobCompleted,
    JobFailed,
    JobSkipped,
    ProcessingFinished,
)
from hvc.domain.models import (
    ConversionSummary,
    DryRunEstimate,
    EncodeJob,
    ErrorKind,
    JobResult,
    MediaAsset,
)
from hvc.infrastructure.event_bus import EventBus
from hvc.infrastructure.ffprobe import FFprobeAdapter
from hvc.infrastructure.file_scanner import FileScanner
from hvc.pipeline.job_builder import JobBuilder
from hvc.pipeline.reporter import estimate_output_bytes
from hvc.pipeline.safe_apply import SafeApplyProtocol


class Orchestrator:
    """Bounded worker pool over the candidate files of one source tree.

    Submit-on-demand: at most `general.jobs` jobs are in flight. When the pool
    is full the dispatching thread blocks in `concurrent.futures.wait` until a
    job completes, merges that result into the summary and only then submits
    the next one. Results are merged by the dispatching thread alone, so the
    summary needs no lock.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        file_scanner: FileScanner,
        ffprobe_adapter: FFprobeAdapter,
        job_builder: JobBuilder,
        protocol: Optional[SafeApplyProtocol] = None,
        shutdown_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.file_scanner = file_scanner
        self.ffprobe_adapter = ffprobe_adapter
        self.job_builder = job_builder
        self.protocol = protocol
        self.shutdown_event = shutdown_event or threading.Event()
        self.logger = logging.getLogger(__name__)

    def discover(self, source_root: Path) -> List[Path]:
        candidates = list(self.file_scanner.scan(source_root))
        self.logger.info(f"Discovery finished: {source_root} found={len(candidates)}")
        self.event_bus.publish(DiscoveryFinished(directory=source_root, files_found=len(candidates)))
        return candidates

    def _probe(self, path: Path) -> Optional[MediaAsset]:
        """Probes one candidate; None when the skip filter excludes it."""
        try:
            size = path.stat().st_size
        except OSError as e:
            size = 0
            self.logger.warning(f"PROBE_WARN: {path.name} cannot stat: {e}")
        try:
            asset = self.ffprobe_adapter.probe(path, size)
        except Exception as e:
            asset = MediaAsset(path=path, size_bytes=size, probe_error=f"ffprobe raised: {e}")
        if asset.probe_error:
            self.logger.warning(f"PROBE_WARN: {path.name} {asset.probe_error}; using fallback bitrate")

        if self.config.general.skip_hevc and asset.is_target_codec:
            self.logger.info(f"SKIP: {path.name} already {asset.codec}")
            self.event_bus.publish(JobSkipped(asset=asset, reason=f"already {asset.codec}"))
            return None
        return asset

    def _execute(self, job: EncodeJob) -> JobResult:
        try:
            return self.protocol.apply(job)
        except Exception as e:
            self.logger.error(f"JOB_EXCEPTION: {job.input_path.name} {e}")
            return JobResult(
                job_id=job.job_id,
                input_path=job.input_path,
                src_bytes=job.source_size,
                messages=(f"ERROR: unexpected error: {e}",),
                error_kind=ErrorKind.UNEXPECTED,
            )

    def _collect(self, future: concurrent.futures.Future, job: EncodeJob, summary: ConversionSummary) -> None:
        try:
            result = future.result()
        except concurrent.futures.CancelledError:
            result = JobResult(
                job_id=job.job_id,
                input_path=job.input_path,
                src_bytes=job.source_size,
                messages=("cancelled before start",),
                error_kind=ErrorKind.INTERRUPTED,
            )
        summary.merge(result)
        if result.success:
            self.logger.info(f"JOB_DONE: {job.input_path.name} -> {result.final_output_path}")
            self.event_bus.publish(JobCompleted(result=result))
        else:
            kind = result.error_kind.value if result.error_kind else "unknown"
            self.logger.error(f"JOB_FAILED: {job.input_path.name} ({kind})")
            self.event_bus.publish(JobFailed(result=result))

    def _wait_one(self, in_flight: Dict[concurrent.futures.Future, EncodeJob], summary: ConversionSummary) -> None:
        done, _ = concurrent.futures.wait(
            set(in_flight.keys()),
            return_when=concurrent.futures.FIRST_COMPLETED,
        )
        for future in done:
            self._collect(future, in_flight.pop(future), summary)

    def run(self, source_root: Optional[Path] = None) -> ConversionSummary:
        if self.protocol is None:
            raise ValueError("Orchestrator.run needs a SafeApplyProtocol")
        source_root = Path(source_root or self.config.source_root)
        candidates = self.discover(source_root)

        summary = ConversionSummary(total_files=len(candidates))
        max_jobs = self.config.general.jobs
        in_flight: Dict[concurrent.futures.Future, EncodeJob] = {}

        with concurrent.futures.ThreadPoolExecutor(max_workers=max_jobs, thread_name_prefix="hvc-job") as executor:
            try:
                for path in candidates:
                    if self.shutdown_event.is_set():
                        break
                    asset = self._probe(path)
                    if asset is None:
                        summary.skipped += 1
                        continue
                    job = self.job_builder.build(asset)

                    # Backpressure: block until a slot frees up
                    while len(in_flight) >= max_jobs:
                        self._wait_one(in_flight, summary)
                    in_flight[executor.submit(self._execute, job)] = job

                while in_flight:
                    self._wait_one(in_flight, summary)

            except KeyboardInterrupt:
                self.logger.info("Ctrl+C detected - stopping new jobs and interrupting active encodes...")
                self.shutdown_event.set()

                for future in list(in_flight.keys()):
                    if not future.done():
                        future.cancel()

                # Running jobs see shutdown_event and terminate ffmpeg
                concurrent.futures.wait(set(in_flight.keys()))
                for future, job in list(in_flight.items()):
                    self._collect(future, job, summary)
                in_flight.clear()

                self.event_bus.publish(ProcessingFinished(summary=summary, interrupted=True))
                self.logger.info("Shutdown complete")
                raise

        interrupted = self.shutdown_event.is_set()
        self.logger.info(
            f"Run finished: processed={summary.processed} encoded={summary.encoded} "
            f"skipped={summary.skipped} errors={summary.errors}"
        )
        self.event_bus.publish(ProcessingFinished(summary=summary, interrupted=interrupted))
        return summary

    def dry_run(self, source_root: Optional[Path] = None) -> DryRunEstimate:
        """Plans every job and estimates output sizes without writing anything."""
        source_root = Path(source_root or self.config.source_root)
        started = time.monotonic()
        estimate = DryRunEstimate()

        for path in self.discover(source_root):
            asset = self._probe(path)
            if asset is None:
                estimate.skipped += 1
                continue
            job = self.job_builder.build(asset)
            estimated = estimate_output_bytes(asset.duration, job.effective_bitrate, job.audio_bitrate)
            estimate.add(asset, estimated)

            encoder = job.chosen_encoder or "libx265"
            self.logger.info(
                f"[DRY-RUN] {path.name}: backup -> {job.backup_path}, "
                f"encode {encoder} @ {job.effective_bitrate or 'lossless'} -> {job.final_output_path}"
            )
            self.event_bus.publish(DryRunPlanned(asset=asset, job=job, estimated_bytes=estimated))

        self.logger.info(
            f"[DRY-RUN] finished in {time.monotonic() - started:.1f}s: files={estimate.files} "
            f"skipped={estimate.skipped} estimated_saved={estimate.percent_saved:.1f}%"
        )
        self.event_bus.publish(ProcessingFinished(estimate=estimate))
        return estimate

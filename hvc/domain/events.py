"""Domain events for the conversion pipeline.

Events flow through the EventBus so the orchestrator never talks to the
terminal directly. See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import Optional
from pydantic import BaseModel
from .models import ConversionSummary, DryRunEstimate, EncodeJob, JobResult, MediaAsset


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class DiscoveryFinished(Event):
    """Emitted after the scanner has produced the candidate list."""

    directory: Path
    files_found: int


class JobStarted(Event):
    job: EncodeJob


class EncoderFallback(Event):
    """Hardware attempt failed; the same job continues on the CPU."""

    job: EncodeJob
    encoder: str
    returncode: int


class JobCompleted(Event):
    result: JobResult


class JobFailed(Event):
    result: JobResult


class JobSkipped(Event):
    """File excluded before any backup (already HEVC)."""

    asset: MediaAsset
    reason: str


class DryRunPlanned(Event):
    asset: MediaAsset
    job: EncodeJob
    estimated_bytes: Optional[int] = None


class ProcessingFinished(Event):
    summary: Optional[ConversionSummary] = None
    estimate: Optional[DryRunEstimate] = None
    interrupted: bool = False

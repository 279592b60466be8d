from typing import Optional
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hvc.domain.events import (
    DiscoveryFinished,
    DryRunPlanned,
    EncoderFallback,
    JobCompleted,
    JobFailed,
    JobSkipped,
    JobStarted,
    ProcessingFinished,
)
from hvc.domain.models import HostCapabilities
from hvc.infrastructure.capabilities import CPU_ENCODER, VENDOR_ENCODERS
from hvc.infrastructure.event_bus import EventBus
from hvc.pipeline.reporter import format_size, render_estimate_line, render_summary_line


class ConsoleFeed:
    """Prints one terminal line per pipeline event, then the run summary."""

    def __init__(self, event_bus: EventBus, console: Optional[Console] = None):
        self.console = console or Console()
        event_bus.subscribe(DiscoveryFinished, self.on_discovery_finished)
        event_bus.subscribe(JobStarted, self.on_job_started)
        event_bus.subscribe(EncoderFallback, self.on_encoder_fallback)
        event_bus.subscribe(JobCompleted, self.on_job_completed)
        event_bus.subscribe(JobFailed, self.on_job_failed)
        event_bus.subscribe(JobSkipped, self.on_job_skipped)
        event_bus.subscribe(DryRunPlanned, self.on_dry_run_planned)
        event_bus.subscribe(ProcessingFinished, self.on_processing_finished)

    def on_discovery_finished(self, event: DiscoveryFinished):
        self.console.print(f"[bold]Found {event.files_found} candidate file(s)[/] in {event.directory}")

    def on_job_started(self, event: JobStarted):
        encoder = event.job.chosen_encoder or CPU_ENCODER
        self.console.print(f"[cyan]START[/] {event.job.input_path.name} ({encoder})")

    def on_encoder_fallback(self, event: EncoderFallback):
        self.console.print(
            f"[yellow]FALLBACK[/] {event.job.input_path.name}: {event.encoder} exited "
            f"{event.returncode}, retrying on CPU"
        )

    def on_job_completed(self, event: JobCompleted):
        r = event.result
        where = "GPU" if r.used_gpu else "CPU"
        self.console.print(
            f"[green]DONE[/] {r.input_path.name} -> {r.final_output_path} "
            f"({where}, {format_size(r.src_bytes)} -> {format_size(r.out_bytes)})"
        )

    def on_job_failed(self, event: JobFailed):
        r = event.result
        kind = r.error_kind.value if r.error_kind else "error"
        detail = r.messages[-1] if r.messages else ""
        self.console.print(f"[red]FAIL[/] {escape(r.input_path.name)} ({kind}) {escape(detail)}")

    def on_job_skipped(self, event: JobSkipped):
        self.console.print(f"[dim]SKIP {event.asset.path.name}: {event.reason}[/]")

    def on_dry_run_planned(self, event: DryRunPlanned):
        job = event.job
        est = format_size(event.estimated_bytes) if event.estimated_bytes is not None else "unknown"
        self.console.print(
            f"[magenta]PLAN[/] {job.input_path.name}: backup -> {job.backup_path}; "
            f"{job.chosen_encoder or CPU_ENCODER} @ {job.effective_bitrate or 'lossless'} "
            f"-> {job.final_output_path} (est. {est})"
        )

    def on_processing_finished(self, event: ProcessingFinished):
        if event.interrupted:
            self.console.print("[bold red]Interrupted[/]: unfinished jobs left their sources untouched")
        if event.summary is not None:
            self.console.print(render_summary_line(event.summary), markup=False)
        if event.estimate is not None:
            self.console.print(render_estimate_line(event.estimate), markup=False)


def render_capabilities(capabilities: HostCapabilities) -> Table:
    table = Table(title="HEVC encoders")
    table.add_column("Vendor")
    table.add_column("Encoder")
    table.add_column("GPU present")
    table.add_column("Usable")
    for vendor, encoder_id in VENDOR_ENCODERS.items():
        table.add_row(
            vendor.value,
            encoder_id,
            "yes" if vendor in capabilities.vendors else "no",
            "[green]yes[/]" if capabilities.is_available(encoder_id) else "[red]no[/]",
        )
    table.add_row("cpu", CPU_ENCODER, "-", "[green]yes[/]")
    return table

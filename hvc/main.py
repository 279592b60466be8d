import threading
import warnings
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

# pyexiftool warns on version mismatches; keep the terminal feed readable
warnings.filterwarnings("ignore")
from hvc.config.loader import DEFAULT_CONFIG_PATH, load_config
from hvc.config.models import MAX_JOBS, AppConfig
from hvc.domain.errors import ToolMissingError
from hvc.domain.models import Container, EncoderChoice, QualityPreset
from hvc.infrastructure.capabilities import CapabilityProber, require_tools
from hvc.infrastructure.event_bus import EventBus
from hvc.infrastructure.exif_tool import ExifToolAdapter
from hvc.infrastructure.ffmpeg import FFmpegAdapter
from hvc.infrastructure.ffprobe import FFprobeAdapter
from hvc.infrastructure.file_scanner import FileScanner
from hvc.infrastructure.housekeeping import HousekeepingService
from hvc.infrastructure.logging import setup_logging
from hvc.pipeline.job_builder import JobBuilder, backup_root_for
from hvc.pipeline.orchestrator import Orchestrator
from hvc.pipeline.path_allocator import PathAllocator
from hvc.pipeline.safe_apply import SafeApplyProtocol
from hvc.ui.console import ConsoleFeed, render_capabilities

app = typer.Typer(help="HVC (HEVC Video Conversion) - back up, re-encode to HEVC, replace originals")

EXIT_CONFIG_ERROR = 1
EXIT_TOOL_MISSING = 2
EXIT_INTERRUPTED = 130


def _fail(message: str, code: int) -> None:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


@app.command()
def convert(
    source_root: Optional[Path] = typer.Argument(None, help="Directory tree to convert (optional if set in config)"),
    backup_root: Optional[Path] = typer.Option(None, "--backup-root", "-b", help="Where originals are copied first"),
    output_root: Optional[Path] = typer.Option(None, "--output-root", help="Write outputs here instead of next to sources"),
    config_path: Optional[Path] = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan and estimate only; touch nothing"),
    preserve_timestamps: Optional[bool] = typer.Option(
        None, "--preserve-timestamps/--no-preserve-timestamps", help="Carry the creation time over to the output"
    ),
    encoder: Optional[EncoderChoice] = typer.Option(None, "--encoder", "-e", help="Encoder choice"),
    preset: Optional[QualityPreset] = typer.Option(None, "--preset", "-p", help="Quality preset"),
    bitrate: Optional[str] = typer.Option(None, "--bitrate", help="Fallback video bitrate, e.g. 3000k"),
    audio_bitrate: Optional[str] = typer.Option(None, "--audio-bitrate", help="AAC audio bitrate, e.g. 160k"),
    skip_hevc: Optional[bool] = typer.Option(None, "--skip-hevc/--no-skip-hevc", help="Skip files that are already HEVC"),
    container: Optional[Container] = typer.Option(None, "--container", help="Output container"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", min=1, max=MAX_JOBS, help="Concurrent jobs"),
    keep_source: bool = typer.Option(False, "--keep-source", help="Do not delete sources after publishing"),
    verify_hash: bool = typer.Option(False, "--verify-hash", help="Verify backups by sha256 instead of size"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    list_encoders: bool = typer.Option(False, "--list-encoders", help="Show detected HEVC encoders and exit"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Convert every video below SOURCE_ROOT to HEVC, backing each one up first."""
    console = Console()

    try:
        config = load_config(config_path)
        # Apply CLI overrides
        if source_root is not None: config.source_root = source_root
        if backup_root is not None: config.backup_root = backup_root
        if output_root is not None: config.output_root = output_root
        if dry_run: config.general.dry_run = True
        if preserve_timestamps is not None: config.general.preserve_timestamps = preserve_timestamps
        if encoder is not None: config.general.encoder = encoder
        if preset is not None: config.general.preset = preset
        if bitrate is not None: config.general.fallback_bitrate = bitrate
        if audio_bitrate is not None: config.general.audio_bitrate = audio_bitrate
        if skip_hevc is not None: config.general.skip_hevc = skip_hevc
        if container is not None: config.general.container = container
        if jobs: config.general.jobs = jobs
        if keep_source: config.general.delete_source = False
        if verify_hash: config.general.backup_verify = "hash"
        if log_path is not None: config.general.log_path = str(log_path)
        if debug: config.general.debug = True

        # Assignments above bypass validation; run the models once more
        config = AppConfig.model_validate(config.model_dump())
        if not list_encoders:
            config.validate_for_run()
    except (FileNotFoundError, ValidationError, ValueError) as exc:
        _fail(str(exc), EXIT_CONFIG_ERROR)

    general = config.general
    try:
        if list_encoders:
            require_tools(config.tools.ffmpeg)
        else:
            require_tools(config.tools.ffmpeg, config.tools.ffprobe)
    except ToolMissingError as exc:
        _fail(str(exc), EXIT_TOOL_MISSING)

    prober = CapabilityProber(config.tools.ffmpeg, verify=general.verify_hw_encoders)
    if list_encoders:
        console.print(render_capabilities(prober.detect()))
        raise typer.Exit(code=0)

    source = Path(config.source_root)
    backups = backup_root_for(config)
    log_path_value = Path(general.log_path) if general.log_path else None
    # Dry runs never create the backup directory just to hold a log
    logger = setup_logging(None if general.dry_run else backups, debug=general.debug, log_path=log_path_value)
    logger.info(
        f"HVC started: source={source} backup={backups} output={config.output_root or 'in place'} "
        f"dry_run={general.dry_run}"
    )
    logger.info(
        f"Config: jobs={general.jobs}, encoder={general.encoder.value}, preset={general.preset.value}, "
        f"fallback={general.fallback_bitrate}, audio={general.audio_bitrate}, container={general.container.value}, "
        f"skip_hevc={general.skip_hevc}, delete_source={general.delete_source}, verify={general.backup_verify}"
    )

    if not general.dry_run:
        housekeeper = HousekeepingService()
        housekeeper.cleanup_temp_files(source)
        if config.output_root and Path(config.output_root).is_dir():
            housekeeper.cleanup_temp_files(Path(config.output_root))

    capabilities = prober.detect()

    exif = None
    if general.use_exif and general.preserve_timestamps and not general.dry_run:
        try:
            exif = ExifToolAdapter(config.tools.exiftool)
            exif.start()
            logger.info("ExifTool started")
        except Exception as exc:
            logger.warning(f"ExifTool unavailable, timestamps via filesystem only: {exc}")
            exif = None

    bus = EventBus()
    ConsoleFeed(bus, console)

    exclude = [backups]
    if config.output_root:
        exclude.append(Path(config.output_root))
    scanner = FileScanner(general.extensions, min_size_bytes=general.min_size_bytes, exclude_dirs=exclude)
    allocator = PathAllocator()
    shutdown_event = threading.Event()
    builder = JobBuilder(config, capabilities, allocator)
    logger.info(f"Encoder selected: {builder.encoder or 'libx265 (CPU)'}")

    protocol = None
    if not general.dry_run:
        protocol = SafeApplyProtocol(
            FFmpegAdapter(config.tools.ffmpeg),
            allocator,
            event_bus=bus,
            exif_adapter=exif,
            delete_source=general.delete_source,
            backup_verify=general.backup_verify,
            shutdown_event=shutdown_event,
        )

    orchestrator = Orchestrator(
        config=config,
        event_bus=bus,
        file_scanner=scanner,
        ffprobe_adapter=FFprobeAdapter(config.tools.ffprobe),
        job_builder=builder,
        protocol=protocol,
        shutdown_event=shutdown_event,
    )

    try:
        if general.dry_run:
            orchestrator.dry_run(source)
        else:
            orchestrator.run(source)
    except KeyboardInterrupt:
        # The orchestrator already stopped dispatch and terminated encoders
        typer.secho("\nConversion stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=EXIT_INTERRUPTED)
    finally:
        if exif is not None:
            exif.stop()
            logger.info("ExifTool terminated")


if __name__ == "__main__":
    app()

import os
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch
from hvc.domain.events import EncoderFallback, JobStarted
from hvc.domain.models import ErrorKind, QualityPreset
from hvc.infrastructure.ffmpeg import EncodeOutcome
from hvc.pipeline.path_allocator import PathAllocator
from hvc.pipeline.safe_apply import SafeApplyProtocol, hash_file

SOURCE_BYTES = b"original camera footage " * 50


def leftovers(directory: Path):
    return sorted(p.name for p in directory.rglob("*.hvctmp"))


def new_source(source_dir, name="clip.mov"):
    src = source_dir / name
    src.write_bytes(SOURCE_BYTES)
    return src


def test_backup_is_byte_identical_and_output_published(source_dir, backup_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    job = make_job(src)

    result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(job)

    assert result.success
    assert result.error_kind is None
    assert (backup_dir / "clip.mov").read_bytes() == SOURCE_BYTES
    assert result.final_output_path == source_dir / "clip.mp4"
    assert result.final_output_path.read_bytes() == b"hevc"
    assert result.deleted
    assert not src.exists()
    assert result.src_bytes == len(SOURCE_BYTES)
    assert result.out_bytes == 4
    assert not result.used_gpu
    assert leftovers(source_dir) == []


def test_source_deleted_only_after_publish(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    job = make_job(src)
    order = []
    real_replace = os.replace
    real_unlink = Path.unlink

    def tracking_replace(a, b):
        order.append("publish")
        return real_replace(a, b)

    def tracking_unlink(self, *args, **kwargs):
        if self == src:
            order.append("delete")
        return real_unlink(self, *args, **kwargs)

    with patch("hvc.pipeline.safe_apply.os.replace", side_effect=tracking_replace), \
         patch.object(Path, "unlink", tracking_unlink):
        result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(job)

    assert result.success
    assert order == ["publish", "delete"]


def test_gpu_failure_falls_back_to_cpu(source_dir, make_job, fake_ffmpeg_factory, event_bus, recorded_events):
    src = new_source(source_dir)
    job = make_job(src, chosen_encoder="hevc_nvenc")
    ffmpeg = fake_ffmpeg_factory(failing={"hevc_nvenc"})

    result = SafeApplyProtocol(ffmpeg, PathAllocator(), event_bus=event_bus).apply(job)

    assert result.success
    assert not result.used_gpu
    assert [c[1] for c in ffmpeg.calls] == ["hevc_nvenc", "libx265"]
    assert leftovers(source_dir) == []
    assert any(isinstance(e, EncoderFallback) and e.encoder == "hevc_nvenc" for e in recorded_events)
    assert isinstance(recorded_events[0], JobStarted)


def test_gpu_success_counts_as_gpu(source_dir, make_job, fake_ffmpeg):
    job = make_job(new_source(source_dir), chosen_encoder="hevc_qsv")
    result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(job)
    assert result.success
    assert result.used_gpu
    assert [c[1] for c in fake_ffmpeg.calls] == ["hevc_qsv"]


def test_both_encoders_fail_leaves_source_and_no_temp(source_dir, backup_dir, make_job, fake_ffmpeg_factory):
    src = new_source(source_dir)
    job = make_job(src, chosen_encoder="hevc_nvenc")
    ffmpeg = fake_ffmpeg_factory(failing={"hevc_nvenc", "libx265"})

    result = SafeApplyProtocol(ffmpeg, PathAllocator()).apply(job)

    assert not result.success
    assert result.error_kind == ErrorKind.ENCODE_FAILED
    assert result.backed_up
    assert src.read_bytes() == SOURCE_BYTES
    assert (backup_dir / "clip.mov").exists()
    assert not (source_dir / "clip.mp4").exists()
    assert leftovers(source_dir) == []
    assert any("no encoder succeeded" in m for m in result.messages)


def test_exit_zero_without_output_is_a_failure(source_dir, make_job, fake_ffmpeg_factory):
    src = new_source(source_dir)
    ffmpeg = fake_ffmpeg_factory(empty={"libx265"})
    result = SafeApplyProtocol(ffmpeg, PathAllocator()).apply(make_job(src))
    assert not result.success
    assert result.error_kind == ErrorKind.ENCODE_FAILED
    assert src.exists()


def test_backup_failure_skips_encode(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    job = make_job(src)

    with patch("hvc.pipeline.safe_apply.shutil.copy2", side_effect=OSError("disk full")):
        result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(job)

    assert not result.success
    assert result.error_kind == ErrorKind.BACKUP_FAILED
    assert not result.backed_up
    assert fake_ffmpeg.calls == []
    assert src.read_bytes() == SOURCE_BYTES
    # The placeholder reserved for the backup is cleaned up
    assert not job.backup_path.exists()


def test_backup_hash_verification(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    job = make_job(src)

    def corrupt_copy(a, b):
        shutil.copyfile(a, b)
        data = bytearray(Path(b).read_bytes())
        data[0] ^= 0xFF
        Path(b).write_bytes(bytes(data))

    with patch("hvc.pipeline.safe_apply.shutil.copy2", side_effect=corrupt_copy):
        result = SafeApplyProtocol(fake_ffmpeg, PathAllocator(), backup_verify="hash").apply(job)

    assert result.error_kind == ErrorKind.BACKUP_FAILED
    assert fake_ffmpeg.calls == []
    assert src.exists()


def test_existing_backup_is_not_overwritten(source_dir, backup_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    backup_dir.mkdir()
    (backup_dir / "clip.mov").write_bytes(b"older backup")

    result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(make_job(src))

    assert result.success
    assert (backup_dir / "clip.mov").read_bytes() == b"older backup"
    assert (backup_dir / "clip (1).mov").read_bytes() == SOURCE_BYTES


def test_publish_failure_keeps_source(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    job = make_job(src)

    with patch("hvc.pipeline.safe_apply.os.replace", side_effect=OSError("read-only")):
        result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(job)

    assert not result.success
    assert result.error_kind == ErrorKind.PUBLISH_FAILED
    assert src.read_bytes() == SOURCE_BYTES
    assert not (source_dir / "clip.mp4").exists()
    assert leftovers(source_dir) == []


def test_delete_failure_is_only_a_warning(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    job = make_job(src)
    real_unlink = Path.unlink

    def refuse_source(self, *args, **kwargs):
        if self == src:
            raise PermissionError("locked")
        return real_unlink(self, *args, **kwargs)

    with patch.object(Path, "unlink", refuse_source):
        result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(job)

    assert result.success
    assert not result.deleted
    assert src.exists()
    assert any(m.startswith("WARNING") for m in result.messages)


def test_keep_source(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    result = SafeApplyProtocol(fake_ffmpeg, PathAllocator(), delete_source=False).apply(make_job(src))
    assert result.success
    assert not result.deleted
    assert src.exists()


def test_collision_publishes_suffixed_name(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    (source_dir / "clip.mp4").write_bytes(b"someone else")
    result = SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(make_job(src))
    assert result.final_output_path == source_dir / "clip (1).mp4"
    assert (source_dir / "clip.mp4").read_bytes() == b"someone else"


def test_timestamp_is_carried_over(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    when = datetime(2019, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    exif = MagicMock()

    result = SafeApplyProtocol(fake_ffmpeg, PathAllocator(), exif_adapter=exif).apply(make_job(src, creation_time=when))

    assert result.success
    assert result.final_output_path.stat().st_mtime == when.timestamp()
    exif.write_creation_date.assert_called_once_with(result.final_output_path, when)


def test_timestamp_failure_is_only_a_warning(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    exif = MagicMock()
    exif.write_creation_date.side_effect = RuntimeError("exiftool crashed")
    job = make_job(src, creation_time=datetime(2019, 5, 6, tzinfo=timezone.utc))

    result = SafeApplyProtocol(fake_ffmpeg, PathAllocator(), exif_adapter=exif).apply(job)

    assert result.success
    assert any("creation time" in m for m in result.messages)


def test_interrupted_encode_stops_the_chain(source_dir, make_job):
    src = new_source(source_dir)
    job = make_job(src, chosen_encoder="hevc_nvenc")
    ffmpeg = MagicMock()
    ffmpeg.encode.return_value = EncodeOutcome(encoder="hevc_nvenc", returncode=-15, interrupted=True)

    result = SafeApplyProtocol(ffmpeg, PathAllocator(), shutdown_event=threading.Event()).apply(job)

    assert result.error_kind == ErrorKind.INTERRUPTED
    assert ffmpeg.encode.call_count == 1
    assert src.exists()


def test_unexpected_error_becomes_failed_result(source_dir, make_job):
    src = new_source(source_dir)
    ffmpeg = MagicMock()
    ffmpeg.encode.side_effect = ValueError("bad intent")

    result = SafeApplyProtocol(ffmpeg, PathAllocator()).apply(make_job(src))

    assert not result.success
    assert result.error_kind == ErrorKind.UNEXPECTED
    assert src.exists()


def test_strategies_order(make_job, source_dir):
    src = new_source(source_dir)
    assert SafeApplyProtocol.strategies(make_job(src, chosen_encoder="hevc_amf")) == ["hevc_amf", None]
    assert SafeApplyProtocol.strategies(make_job(src)) == [None]


def test_lossless_job_encodes_without_bitrate(source_dir, make_job, fake_ffmpeg):
    src = new_source(source_dir)
    job = make_job(src, effective_bitrate=None, preset=QualityPreset.LOSSLESS)
    assert SafeApplyProtocol(fake_ffmpeg, PathAllocator()).apply(job).success


def test_hash_file(tmp_path):
    f = tmp_path / "a.bin"
    f.write_bytes(b"abc")
    assert hash_file(f) == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

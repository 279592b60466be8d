from hvc.infrastructure.housekeeping import TEMP_SUFFIX, HousekeepingService


def test_cleanup_temp_files(tmp_path):
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    (tmp_path / f".clip.1234{TEMP_SUFFIX}").write_bytes(b"partial")
    (nested / f".other.5678{TEMP_SUFFIX}").write_bytes(b"partial")
    (nested / "keep.mp4").write_bytes(b"video")

    removed = HousekeepingService().cleanup_temp_files(tmp_path)

    assert removed == 2
    assert [p.name for p in tmp_path.rglob("*") if p.is_file()] == ["keep.mp4"]


def test_cleanup_nothing_to_do(tmp_path):
    assert HousekeepingService().cleanup_temp_files(tmp_path) == 0

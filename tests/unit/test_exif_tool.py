import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch
from hvc.infrastructure.exif_tool import QUICKTIME_DATE_TAGS, ExifToolAdapter


@pytest.fixture
def mock_et():
    with patch("hvc.infrastructure.exif_tool.exiftool.ExifTool") as cls:
        instance = cls.return_value
        instance.running = False
        instance.last_status = 0
        yield cls, instance


def test_start_and_stop(mock_et):
    cls, et = mock_et
    adapter = ExifToolAdapter("/usr/local/bin/exiftool")
    cls.assert_called_once_with(executable="/usr/local/bin/exiftool")

    adapter.start()
    et.run.assert_called_once()

    et.running = True
    adapter.stop()
    et.terminate.assert_called_once()


def test_write_creation_date_converts_to_utc(mock_et):
    _, et = mock_et
    adapter = ExifToolAdapter()
    when = datetime(2022, 6, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))

    adapter.write_creation_date(Path("/v/out.mp4"), when)

    args = et.execute.call_args[0]
    assert "-QuickTime:CreateDate=2022:06:01 12:00:00" in args
    assert len([a for a in args if a.startswith("-QuickTime:")]) == len(QUICKTIME_DATE_TAGS)
    assert args[-2:] == ("-overwrite_original", "/v/out.mp4")


def test_write_creation_date_nonzero_status(mock_et):
    _, et = mock_et
    et.last_status = 1
    with pytest.raises(RuntimeError):
        ExifToolAdapter().write_creation_date(Path("/v/out.mp4"), datetime(2022, 6, 1))

import pandas as pd
import pytest

from gpmf_builders import build_container
from gpmf_reader.processing.telemetry_decoder import decode_telemetry
from gpmf_reader.scripts.dump_gpmf_telemetry import dump_telemetry
from gpmf_reader.utils import format_duration, summarize_telemetry


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0m 0s"), (9.9, "0m 9s"), (383, "6m 23s"), (4500, "1h 15m"), (3600, "1h 0m")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_summarize_telemetry(gps_container):
    summary = summarize_telemetry(decode_telemetry(gps_container))
    assert summary == (
        "HERO Test · 1 GPS · 0 MAGN · 0m 5s · start 2023-06-15T12:30:45.500000+00:00"
    )


def test_dump_writes_location_csv(tmp_path, gps_container):
    mp4_path = tmp_path / "GX010001.MP4"
    mp4_path.write_bytes(gps_container.getvalue())
    out_dir = tmp_path / "out"

    assert dump_telemetry(mp4_path, out_dir)

    frame = pd.read_csv(out_dir / "GX010001_gps.csv")
    assert frame["lat"].tolist() == [100.0]
    assert not (out_dir / "GX010001_attitude.csv").exists()


def test_dump_without_telemetry(tmp_path, gps_payload):
    mp4_path = tmp_path / "video_only.mp4"
    mp4_path.write_bytes(build_container([gps_payload], handler="vide"))
    assert not dump_telemetry(mp4_path, None)


def test_dump_unreadable_container(tmp_path):
    mp4_path = tmp_path / "broken.mp4"
    mp4_path.write_bytes(b"\x00\x00\x00\x01free\x00\x00\x00\x00")
    assert not dump_telemetry(mp4_path, None)

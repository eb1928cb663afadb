import datetime
import io
import struct

import pytest

from gpmf_builders import (
    box,
    build_container,
    device,
    full_box,
    hdlr,
    nest,
    stts,
    tsmp,
    video_track,
)
from gpmf_reader.io.byte_cursor import ByteCursor
from gpmf_reader.processing.box_walker import EPOCH_1904, BoxTreeWalker, walk_boxes


def walk(data: bytes):
    return walk_boxes(ByteCursor(io.BytesIO(data)))


@pytest.fixture
def payloads() -> list[bytes]:
    return [device(nest("STRM", tsmp(i))) for i in range(1, 5)]


def test_locates_every_payload(payloads):
    data = build_container(payloads, extra_tracks=[video_track()])
    movie = walk(data)

    assert movie.timescale == 1000
    assert movie.track_count == 2
    tables = movie.metadata
    assert tables is not None
    assert tables.timescale == 1000
    assert tables.sample_sizes == [len(p) for p in payloads]
    assert len(tables.payloads) == 4
    for location, payload in zip(tables.payloads, payloads):
        assert data[location.offset : location.offset + location.size] == payload


def test_chunked_payloads_are_expanded(payloads):
    data = build_container(payloads, samples_per_chunk=2)
    tables = walk(data).metadata

    assert len(tables.chunk_offsets) == 2
    assert tables.sample_to_chunk[0].samples_per_chunk == 2
    for location, payload in zip(tables.payloads, payloads):
        assert data[location.offset : location.offset + location.size] == payload


def test_timing_tables(payloads):
    tables = walk(build_container(payloads, track_timescale=1000, sample_duration=1001)).metadata
    assert tables.sample_count == 4
    assert tables.metadata_length_s == pytest.approx(4.004)
    assert tables.base_sample_duration == pytest.approx(1001)


def test_track_times_and_video_length(payloads):
    movie = walk(build_container(payloads, created=3600))
    assert movie.video_length_s == pytest.approx(4.0)
    assert movie.metadata.creation_time == EPOCH_1904 + datetime.timedelta(hours=1)
    assert movie.metadata.creation_time.tzinfo is not None


def test_payload_window(payloads):
    movie = walk(build_container(payloads, sample_duration=1000))
    assert movie.payload_window(0) == pytest.approx((0.0, 1.0))
    assert movie.payload_window(3) == pytest.approx((3.0, 4.0))
    # the last window is clamped to the stream length
    assert movie.payload_window(4) == pytest.approx((4.0, 4.0))


def test_blank_edit_shifts_track_later(payloads):
    movie = walk(build_container(payloads, edit_entries=[(500, 0), (4000, 1)]))
    assert movie.metadata.edit_offset == 500
    assert movie.payload_window(0) == pytest.approx((0.5, 1.5))


def test_media_time_edit_shifts_track_earlier(payloads):
    movie = walk(
        build_container(
            payloads, movie_timescale=600, track_timescale=1000, edit_entries=[(2400, 1000)]
        )
    )
    assert movie.metadata.edit_offset == -600
    t_in, _ = movie.payload_window(1)
    assert t_in == pytest.approx(0.0)


def test_non_metadata_handler_is_ignored(payloads):
    assert walk(build_container(payloads, handler="vide")).metadata is None


def test_wrong_sample_format_disqualifies_track(payloads):
    assert walk(build_container(payloads, sub_type="tmcd")).metadata is None


def test_large_size_escape_is_honoured(payloads):
    free = struct.pack(">I4sQ", 1, b"free", 24) + bytes(8)
    data = free + build_container(payloads)
    # offsets in the tables do not account for the prefix; only the walk matters
    tables = walk(data).metadata
    assert tables is not None
    assert len(tables.sample_sizes) == 4


def test_truncated_trailing_box_ends_walk_quietly(payloads):
    trailer = struct.pack(">I4s", 10_000, b"udta") + bytes(16)
    movie = walk(build_container(payloads, trailer=trailer))
    assert len(movie.metadata.payloads) == 4


def test_malformed_table_box_is_skipped(payloads):
    data = bytearray(build_container(payloads))
    # claim far more sample sizes than the stsz box can hold
    index = bytes(data).index(b"stsz")
    data[index + 8 : index + 12] = struct.pack(">I", 0)
    data[index + 12 : index + 16] = struct.pack(">I", 1_000_000)
    tables = walk(bytes(data)).metadata

    assert tables is not None
    assert tables.sample_sizes == []
    assert tables.payloads == []


def test_empty_source():
    movie = walk(b"")
    assert movie.metadata is None
    assert movie.track_count == 0


def test_unknown_top_level_boxes_are_skipped(payloads):
    data = box("skip", bytes(32)) + build_container(payloads)
    assert walk(data).metadata is not None


def test_version_1_headers_without_sample_description():
    mvhd = full_box("mvhd", struct.pack(">QQIQ", 0, 0, 600, 3000) + bytes(80), version=1)
    mdhd = full_box(
        "mdhd", struct.pack(">QQIQHH", 7200, 7200, 90000, 450000, 0x55C4, 0), version=1
    )
    stbl = box("stbl", stts([(5, 90000)]))
    trak = box("trak", box("mdia", mdhd + hdlr("meta") + box("minf", stbl)))
    movie = walk(box("moov", mvhd + trak))

    assert movie.timescale == 600
    assert movie.duration == 3000
    assert movie.video_length_s == pytest.approx(5.0)
    tables = movie.metadata
    assert tables is not None
    assert tables.timescale == 90000
    assert tables.creation_time == EPOCH_1904 + datetime.timedelta(hours=2)
    assert tables.metadata_length_s == pytest.approx(5.0)
    assert tables.payloads == []


def test_zero_size_box_runs_to_end_of_file(payloads):
    trailer = struct.pack(">I4s", 0, b"free") + bytes(20)
    tables = walk(build_container(payloads, trailer=trailer)).metadata
    assert len(tables.payloads) == 4


def test_uniform_sample_size_without_table(payloads):
    data = build_container(payloads, uniform_sizes=True)
    tables = walk(data).metadata

    assert tables.sample_sizes == [len(payloads[0])] * 4
    assert len(tables.payloads) == 4
    for location, payload in zip(tables.payloads, payloads):
        assert location.size == len(payload)
        assert data[location.offset : location.offset + location.size] == payload


def test_tracks_past_the_limit_are_skipped(payloads):
    data = build_container(payloads, extra_tracks=[video_track()])
    movie = BoxTreeWalker(ByteCursor(io.BytesIO(data)), max_tracks=1).walk()

    assert movie.track_count == 1
    assert movie.metadata is None

import pytest

from gpmf_reader.processing.chunk_map import ChunkMapError, build_chunk_map
from gpmf_reader.telemetry_data import SampleToChunk


def run(first_chunk: int, samples: int) -> SampleToChunk:
    return SampleToChunk(
        first_chunk_index=first_chunk, samples_per_chunk=samples, sample_description_id=1
    )


def test_one_sample_per_chunk_uses_offsets_directly():
    locations = build_chunk_map([100, 400, 900], [run(1, 1)], [10, 20, 30])
    assert [(l.offset, l.size) for l in locations] == [(100, 10), (400, 20), (900, 30)]


def test_samples_within_a_chunk_are_contiguous():
    locations = build_chunk_map([100, 500], [run(1, 3)], [10, 20, 30, 40, 50, 60])
    assert [l.offset for l in locations] == [100, 110, 130, 500, 540, 590]
    assert [l.size for l in locations] == [10, 20, 30, 40, 50, 60]


def test_later_runs_change_samples_per_chunk():
    locations = build_chunk_map(
        [100, 300, 400], [run(1, 2), run(2, 1)], [10, 10, 10, 10]
    )
    assert [l.offset for l in locations] == [100, 110, 300, 400]


def test_chunk_boundaries_match_chunk_offsets():
    chunk_offsets = [1000, 5000, 9000, 12000]
    sizes = [7, 11, 13, 17, 19, 23, 29, 31, 37]
    runs = [run(1, 3), run(3, 2), run(4, 1)]
    locations = build_chunk_map(chunk_offsets, runs, sizes)

    first_samples = [0, 3, 6, 8]
    assert [locations[i].offset for i in first_samples] == chunk_offsets
    for i in range(1, len(locations)):
        if i not in first_samples:
            assert locations[i].offset == locations[i - 1].offset + sizes[i - 1]


def test_empty_size_table_gives_no_payloads():
    assert build_chunk_map([100], [run(1, 1)], []) == []


def test_missing_sample_to_chunk_table_is_an_error():
    with pytest.raises(ChunkMapError):
        build_chunk_map([100], [], [10, 20])


def test_samples_beyond_last_chunk_are_an_error():
    with pytest.raises(ChunkMapError):
        build_chunk_map([100, 200], [run(1, 1)], [10, 10, 10])


def test_zero_samples_per_chunk_is_an_error():
    with pytest.raises(ChunkMapError):
        build_chunk_map([100], [run(1, 0)], [10, 10])

"""Reconstruct per-sample file offsets from the compressed sample tables.

Only chunk boundaries are stored on disk (``stco``).  Samples inside a chunk
are laid out back to back, so a sample's offset is either the offset of the
chunk it opens or the previous sample's offset plus its size.
"""

from __future__ import annotations

import logging
from typing import Sequence

from gpmf_reader.telemetry_data import PayloadLocation, SampleToChunk

logger = logging.getLogger(__name__)


class ChunkMapError(ValueError):
    """The chunk, run and size tables cannot be reconciled."""


def build_chunk_map(
    chunk_offsets: Sequence[int],
    sample_to_chunk: Sequence[SampleToChunk],
    sample_sizes: Sequence[int],
) -> list[PayloadLocation]:
    """Return one :class:`PayloadLocation` per entry of *sample_sizes*.

    When there is one chunk per sample the offsets are taken as they are.
    Otherwise the ``stsc`` runs are expanded: sample ``i`` opens a new chunk
    exactly when ``i`` equals the first sample index of the next chunk.
    """
    sample_count = len(sample_sizes)
    if sample_count == 0:
        return []
    if not chunk_offsets:
        raise ChunkMapError("No chunk offsets for a non-empty sample table")

    if len(chunk_offsets) == sample_count:
        return [
            PayloadLocation(offset=offset, size=size)
            for offset, size in zip(chunk_offsets, sample_sizes)
        ]

    if not sample_to_chunk:
        raise ChunkMapError(
            f"{len(chunk_offsets)} chunks for {sample_count} samples "
            "but no sample-to-chunk table"
        )
    if any(run.samples_per_chunk <= 0 for run in sample_to_chunk):
        raise ChunkMapError("Sample-to-chunk run with zero samples per chunk")

    run = 0
    chunk = 0
    offset = chunk_offsets[0]
    next_chunk_start = _samples_in_chunk(sample_to_chunk, run)

    locations = [PayloadLocation(offset=offset, size=sample_sizes[0])]
    for i in range(1, sample_count):
        if i == next_chunk_start:
            chunk += 1
            if chunk >= len(chunk_offsets):
                raise ChunkMapError(
                    f"Sample {i} falls past the last of {len(chunk_offsets)} chunks"
                )
            # stsc chunk indices are 1-based
            if (
                run + 1 < len(sample_to_chunk)
                and sample_to_chunk[run + 1].first_chunk_index - 1 <= chunk
            ):
                run += 1
            offset = chunk_offsets[chunk]
            next_chunk_start = i + _samples_in_chunk(sample_to_chunk, run)
        else:
            offset += sample_sizes[i - 1]
        locations.append(PayloadLocation(offset=offset, size=sample_sizes[i]))

    if chunk + 1 < len(chunk_offsets):
        logger.debug(
            "Chunk map used %d of %d chunks", chunk + 1, len(chunk_offsets)
        )
    return locations


def _samples_in_chunk(sample_to_chunk: Sequence[SampleToChunk], run: int) -> int:
    return sample_to_chunk[run].samples_per_chunk

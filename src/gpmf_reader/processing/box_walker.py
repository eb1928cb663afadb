"""
Container box tree walker: locates the GPMF metadata track and its sample tables.

The container is a tree of length-prefixed boxes (4-byte big-endian size,
4-byte ASCII type, payload; a size of ``1`` means a 64-bit size follows the
type, a size of ``0`` means the box runs to the end of its parent).  Only the
boxes below are understood; everything else is skipped by its declared size.

| Box | Role |
|-----|------|
| `moov`, `trak`, `mdia`, `minf`, `stbl` | containers, walked recursively |
| `mvhd` | movie timescale / duration |
| `mdhd` | track timescale / duration, creation & modification time |
| `hdlr` | track handler type (`meta` for the telemetry track) |
| `edts` | edit list: shift of the track against the movie timeline |
| `stsd` | sample format (`gpmd` for GPMF) |
| `stts`, `stsc`, `stsz`, `stco` | sample timing, chunk runs, sizes, chunk offsets |

A box whose counts disagree with its declared size is skipped with a warning;
a truncated trailing box ends the walk quietly.
"""

from __future__ import annotations

import datetime
import logging
import struct
from dataclasses import dataclass, field

from gpmf_reader.config import config
from gpmf_reader.io.byte_cursor import ByteCursor, EndOfDataError
from gpmf_reader.processing.chunk_map import ChunkMapError, build_chunk_map
from gpmf_reader.telemetry_data import (
    MovieInfo,
    SampleTables,
    SampleToChunk,
    TimeToSample,
)

logger = logging.getLogger(__name__)

ALLOWED_BOXES = frozenset(
    {
        "moov",
        "mvhd",
        "trak",
        "mdia",
        "mdhd",
        "minf",
        "stsd",
        "stbl",
        "stts",
        "stsc",
        "stsz",
        "stco",
        "hdlr",
        "edts",
    }
)

_CONTAINER_BOXES = frozenset({"moov", "trak", "mdia", "minf", "stbl"})

# mdhd times count seconds from 1904-01-01
EPOCH_1904 = datetime.datetime(1904, 1, 1, tzinfo=datetime.timezone.utc)


class BoxFormatError(ValueError):
    """A box's declared counts are inconsistent with its size."""


@dataclass
class _TrackContext:
    """Per-``trak`` state collected while its child boxes are walked."""

    index: int
    handler_type: str = ""
    sub_type: str = ""
    disqualified: bool = False

    timescale: int = 0
    duration: int = 0
    creation_time: datetime.datetime | None = None
    modification_time: datetime.datetime | None = None

    # (segment_duration, media_time) pairs of a version 0 edit list
    edit_entries: list[tuple[int, int]] = field(default_factory=list)

    sample_sizes: list[int] | None = None
    chunk_offsets: list[int] | None = None
    sample_to_chunk: list[SampleToChunk] | None = None
    time_to_sample: list[TimeToSample] | None = None

    @property
    def is_metadata(self) -> bool:
        return self.handler_type == config.METADATA_HANDLER and not self.disqualified


class BoxTreeWalker:
    """Walk the box tree of *cursor* once and collect :class:`MovieInfo`."""

    def __init__(self, cursor: ByteCursor, max_tracks: int | None = None):
        self._cursor = cursor
        self._max_tracks = config.MAX_TRACKS if max_tracks is None else max_tracks
        self._movie = MovieInfo()
        self._track: _TrackContext | None = None
        self._handlers = {
            "mvhd": self._read_mvhd,
            "mdhd": self._read_mdhd,
            "hdlr": self._read_hdlr,
            "edts": self._read_edts,
            "stsd": self._read_stsd,
            "stsc": self._read_stsc,
            "stsz": self._read_stsz,
            "stco": self._read_stco,
            "stts": self._read_stts,
        }

    def walk(self) -> MovieInfo:
        self._cursor.seek(0)
        self._walk_range(self._cursor.length)
        if self._movie.metadata is None:
            logger.debug("No %s metadata track found", config.METADATA_SUBTYPE)
        return self._movie

    # ------------------------------------------------------------------
    # Tree traversal
    # ------------------------------------------------------------------

    def _walk_range(self, end: int) -> bool:
        """Walk sibling boxes up to *end*; ``False`` means the walk is over."""
        cursor = self._cursor
        while cursor.position + 8 <= end:
            start = cursor.position
            size = cursor.read_u32()
            box_type = cursor.read_fourcc()
            header_size = 8
            if size == 1:
                size = cursor.read_u64()
                header_size = 16
            elif size == 0:
                size = end - start

            if size < header_size:
                logger.warning(
                    "Box %r at offset %d declares invalid size %d", box_type, start, size
                )
                return False

            box_end = start + size

            if box_type not in ALLOWED_BOXES:
                logger.debug("Skipping box %s (%d bytes)", box_type, size)
                if not cursor.try_skip(box_end - cursor.position):
                    logger.debug("Box %s is truncated; stopping walk", box_type)
                    return False
                continue

            if box_type in _CONTAINER_BOXES:
                if not self._walk_container(box_type, min(box_end, cursor.length)):
                    return False
            else:
                self._read_leaf(box_type, start, box_end)

            if box_end > cursor.length:
                logger.debug("Box %s is truncated; stopping walk", box_type)
                return False
            cursor.seek(box_end)
        return True

    def _walk_container(self, box_type: str, end: int) -> bool:
        if box_type != "trak":
            return self._walk_range(end)

        if self._movie.track_count >= self._max_tracks:
            logger.warning(
                "More than %d tracks; skipping the remaining ones", self._max_tracks
            )
            return True

        self._movie.track_count += 1
        self._track = _TrackContext(index=self._movie.track_count)
        logger.debug("Processing track %d", self._track.index)
        try:
            return self._walk_range(end)
        finally:
            self._finish_track(self._track)
            self._track = None

    def _read_leaf(self, box_type: str, start: int, box_end: int) -> None:
        try:
            self._handlers[box_type](box_end)
        except (BoxFormatError, EndOfDataError) as exc:
            logger.warning("Skipping %s box at offset %d: %s", box_type, start, exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, count: int, box_end: int) -> None:
        remaining = box_end - self._cursor.position
        if count > remaining:
            raise BoxFormatError(
                f"needs {count} bytes but only {remaining} remain in the box"
            )

    def _read_table(self, count: int, fmt: str, box_end: int) -> list[tuple]:
        """Read *count* fixed-size entries in file order.

        Entries are returned in the order they are stored.  Filling an array
        from its last slot while counting down and then reversing it, as
        older readers of this format do, yields the same order.
        """
        entry_fmt = (">" if self._cursor.big_endian else "<") + fmt
        entry_size = struct.calcsize(entry_fmt)
        self._require(count * entry_size, box_end)
        data = self._cursor.read_bytes(count * entry_size)
        return list(struct.iter_unpack(entry_fmt, data))

    def _read_version(self) -> int:
        version = self._cursor.read_u8()
        self._cursor.skip(3)  # flags
        return version

    def _metadata_track(self) -> _TrackContext | None:
        track = self._track
        if track is None or not track.is_metadata:
            return None
        return track

    # ------------------------------------------------------------------
    # Box decoders
    # ------------------------------------------------------------------

    def _read_mvhd(self, box_end: int) -> None:
        cursor = self._cursor
        version = self._read_version()
        if version == 1:
            cursor.skip(16)
            timescale = cursor.read_u32()
            duration = cursor.read_u64()
        else:
            cursor.skip(8)
            timescale = cursor.read_i32()
            duration = cursor.read_i32()
        self._movie.timescale = timescale
        self._movie.duration = duration
        logger.debug("mvhd: timescale %d, duration %d", timescale, duration)

    def _read_mdhd(self, box_end: int) -> None:
        track = self._track
        if track is None:
            return
        cursor = self._cursor
        version = self._read_version()
        if version == 1:
            created = cursor.read_u64()
            modified = cursor.read_u64()
            timescale = cursor.read_u32()
            duration = cursor.read_u64()
        else:
            created = cursor.read_u32()
            modified = cursor.read_u32()
            timescale = cursor.read_i32()
            duration = cursor.read_i32()
        cursor.skip(4)  # language + quality

        track.creation_time = EPOCH_1904 + datetime.timedelta(seconds=created)
        track.modification_time = EPOCH_1904 + datetime.timedelta(seconds=modified)
        track.timescale = timescale
        track.duration = duration

        if self._movie.video_length_s == 0.0 and timescale > 0:
            self._movie.video_length_s = duration / timescale
        logger.debug(
            "mdhd: track %d timescale %d, duration %d", track.index, timescale, duration
        )

    def _read_hdlr(self, box_end: int) -> None:
        if self._track is None:
            return
        self._cursor.skip(8)  # version, flags, pre_defined
        self._track.handler_type = self._cursor.read_fourcc()
        logger.debug("hdlr: track %d is %r", self._track.index, self._track.handler_type)

    def _read_edts(self, box_end: int) -> None:
        track = self._track
        if track is None:
            return
        cursor = self._cursor
        cursor.skip(4)  # elst size
        if cursor.read_fourcc() != "elst":
            return
        if self._read_version() != 0:
            logger.debug("edts: ignoring non-version-0 edit list")
            return
        count = cursor.read_u32()
        entries = self._read_table(count, "iii", box_end)
        track.edit_entries = [(duration, media_time) for duration, media_time, _ in entries]
        logger.debug("edts: track %d, %d edit entries", track.index, count)

    def _read_stsd(self, box_end: int) -> None:
        track = self._track
        if track is None or not track.is_metadata:
            return
        self._cursor.skip(12)  # version/flags, entry count, entry size
        track.sub_type = self._cursor.read_fourcc()
        if track.sub_type != config.METADATA_SUBTYPE:
            track.disqualified = True
        logger.debug("stsd: track %d sub-type %r", track.index, track.sub_type)

    def _read_stsc(self, box_end: int) -> None:
        track = self._metadata_track()
        if track is None:
            return
        self._cursor.skip(4)
        count = self._cursor.read_u32()
        rows = self._read_table(count, "III", box_end)
        track.sample_to_chunk = [
            SampleToChunk(
                first_chunk_index=first,
                samples_per_chunk=samples,
                sample_description_id=desc_id,
            )
            for first, samples, desc_id in rows
        ]
        logger.debug("stsc: %d runs", count)

    def _read_stsz(self, box_end: int) -> None:
        track = self._metadata_track()
        if track is None:
            return
        cursor = self._cursor
        cursor.skip(4)
        uniform_size = cursor.read_u32()
        count = cursor.read_u32()

        if count > 0 and cursor.position + 4 * count <= box_end:
            sizes = [size for (size,) in self._read_table(count, "I", box_end)]
        elif uniform_size != 0 or count == 0:
            sizes = [uniform_size] * count
        else:
            raise BoxFormatError(f"no room for {count} sample sizes")
        track.sample_sizes = sizes
        logger.debug("stsz: %d sample sizes", count)

    def _read_stco(self, box_end: int) -> None:
        track = self._metadata_track()
        if track is None:
            return
        self._cursor.skip(4)
        count = self._cursor.read_u32()
        track.chunk_offsets = [
            offset for (offset,) in self._read_table(count, "I", box_end)
        ]
        logger.debug("stco: %d chunk offsets", count)

    def _read_stts(self, box_end: int) -> None:
        track = self._metadata_track()
        if track is None:
            return
        self._cursor.skip(4)
        count = self._cursor.read_u32()
        track.time_to_sample = [
            TimeToSample(sample_count=samples, duration=duration)
            for samples, duration in self._read_table(count, "II", box_end)
        ]
        logger.debug("stts: %d entries", count)

    # ------------------------------------------------------------------
    # Track finalisation
    # ------------------------------------------------------------------

    def _finish_track(self, track: _TrackContext) -> None:
        if not track.is_metadata:
            return
        if self._movie.metadata is not None:
            logger.debug("Ignoring additional metadata track %d", track.index)
            return

        tables = SampleTables(
            timescale=track.timescale,
            duration=track.duration,
            creation_time=track.creation_time,
            modification_time=track.modification_time,
            edit_offset=self._edit_offset(track),
            sample_sizes=track.sample_sizes or [],
            chunk_offsets=track.chunk_offsets or [],
            sample_to_chunk=track.sample_to_chunk or [],
            time_to_sample=track.time_to_sample or [],
        )
        self._apply_timing(tables)

        if tables.sample_count != len(tables.sample_sizes):
            logger.warning(
                "Metadata track has %d timed samples but %d sample sizes",
                tables.sample_count,
                len(tables.sample_sizes),
            )

        try:
            tables.payloads = build_chunk_map(
                tables.chunk_offsets, tables.sample_to_chunk, tables.sample_sizes
            )
        except ChunkMapError as exc:
            logger.warning("Cannot locate metadata payloads: %s", exc)

        logger.debug(
            "Metadata track %d: %d payloads, %.3f s, edit offset %d",
            track.index,
            len(tables.payloads),
            tables.metadata_length_s,
            tables.edit_offset,
        )
        self._movie.metadata = tables

    def _edit_offset(self, track: _TrackContext) -> int:
        """Shift of the track in movie timescale units.

        Blank segments (media time 0) push the track later; a non-zero media
        time on the first entry pulls it earlier.
        """
        offset = 0
        for i, (segment_duration, media_time) in enumerate(track.edit_entries):
            if media_time == 0:
                offset += segment_duration
            elif i == 0 and track.timescale > 0:
                offset -= int(media_time / track.timescale * self._movie.timescale)
        return offset

    @staticmethod
    def _apply_timing(tables: SampleTables) -> None:
        if tables.timescale <= 0:
            return
        length = 0.0
        samples = 0
        for run in tables.time_to_sample:
            samples += run.sample_count
            length += run.sample_count * run.duration / tables.timescale
            if samples and (run.sample_count > 1 or len(tables.time_to_sample) == 1):
                tables.base_sample_duration = length * tables.timescale / samples
        tables.metadata_length_s = length


def walk_boxes(cursor: ByteCursor) -> MovieInfo:
    """Walk the container behind *cursor* and return its :class:`MovieInfo`."""
    return BoxTreeWalker(cursor).walk()

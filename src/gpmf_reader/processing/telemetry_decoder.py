"""
GPMF telemetry decoding: turns the payloads of the metadata track into GPS and attitude samples.

#### Payload timing

Every payload covers a window of the video timeline computed from the
metadata track's ``stts`` table and edit list (see
:meth:`MovieInfo.payload_window`).  Samples inside one KLV entry are spread
evenly across that window.

#### Keys

| FourCC | Meaning | Effect |
|--------|---------|--------|
| GPSP | DOP x 100 | above the unreliability threshold, GPS5 samples are dropped |
| GPSF | fix (0 / 2 / 3) | applied to following GPS5 samples |
| SCAL | divisors, one per field | applied to the following GPS5 / GPS9 / MAGN entry |
| GPSU | UTC ``YYMMDDhhmmss.sss`` | re-anchors the GPS clock; the first one is the start time |
| MAGN | 3-axis magnetometer | yaw from the horizontal axes |
| GPS9 | lat, lon, alt, speed2d, speed3d, days, secs, DOP, fix | supersedes GPS5 for the whole file |
| GPS5 | lat, lon, alt, speed2d, speed3d | timed from the running GPSU clock |

Scale divisors, DOP, fix and the UTC clock carry over from one entry to the
next and from one payload to the next; they live in :class:`DecoderState`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Callable

import numpy as np

from gpmf_reader.config import config
from gpmf_reader.io.byte_cursor import ByteCursor
from gpmf_reader.processing.box_walker import walk_boxes
from gpmf_reader.processing.gpmf_cursor import GPMFCursor, GPMFNestingError
from gpmf_reader.telemetry_data import (
    AttitudeSample,
    GPSFix,
    LocationSample,
    PayloadLocation,
    Telemetry,
)

logger = logging.getLogger(__name__)

EPOCH_2000 = datetime(2000, 1, 1, tzinfo=timezone.utc)

# GPS9 record: 7 x int32 followed by 2 x uint16
_GPS9_DTYPE = np.dtype(
    [
        ("lat", ">i4"),
        ("lon", ">i4"),
        ("alt", ">i4"),
        ("speed2d", ">i4"),
        ("speed3d", ">i4"),
        ("days", ">i4"),
        ("seconds", ">i4"),
        ("dop", ">u2"),
        ("fix", ">u2"),
    ]
)


# ---------------------------------------------------------------------------
# Decoder state
# ---------------------------------------------------------------------------


@dataclass
class DecoderState:
    """Accumulator threaded through every payload of one decode pass."""

    dop_threshold: int = field(default_factory=lambda: config.DOP_UNRELIABLE_THRESHOLD)
    magn_center: tuple[float, float] = field(
        default_factory=lambda: (config.MAGN_CENTER_X, config.MAGN_CENTER_Y)
    )

    divisors: np.ndarray | None = None
    dop: int = 0
    fix: GPSFix = GPSFix.NO_LOCK
    utc: datetime | None = None
    has_gps9: bool = False

    start_time: datetime | None = None
    device_name: str | None = None
    device_id: int | None = None
    locations: list[LocationSample] = field(default_factory=list)
    attitudes: list[AttitudeSample] = field(default_factory=list)
    seen_keys: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def parse_gpsu(text: str) -> datetime | None:
    """Parse a ``GPSU`` string into a UTC :class:`datetime`.

    Format: ``YYMMDDhhmmss.sss``  e.g. ``"250508104822.180"``.  Fields are
    taken from fixed offsets; anything else returns ``None``.
    """
    text = text.rstrip("\x00")
    if len(text) != 16 or text[12] != ".":
        return None
    digits = text[:12] + text[13:]
    if not (digits.isascii() and digits.isdigit()):
        return None
    try:
        return datetime(
            2000 + int(text[0:2]),
            int(text[2:4]),
            int(text[4:6]),
            int(text[6:8]),
            int(text[8:10]),
            int(text[10:12]),
            int(text[13:16]) * 1000,
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def compute_yaw(x, y, center: tuple[float, float] | None = None):
    """Heading in degrees ``[0, 360)`` from the horizontal magnetometer axes.

    Both axes are centred on the calibration point; Y is sign-flipped.
    Accepts scalars or arrays.
    """
    center_x, center_y = (
        (config.MAGN_CENTER_X, config.MAGN_CENTER_Y) if center is None else center
    )
    normalized_x = np.asarray(x, dtype=np.float64) - center_x
    normalized_y = (np.asarray(y, dtype=np.float64) - center_y) * -1
    return np.mod(np.degrees(np.arctan2(normalized_y, normalized_x)) + 360.0, 360.0)


def _apply_scal(values: np.ndarray, divisors: np.ndarray) -> np.ndarray | None:
    """Divide *values* by *divisors*, broadcasting a single divisor."""
    if divisors.shape[0] == 1:
        return values / divisors[0]
    if divisors.shape[0] < values.shape[1]:
        return None
    return values / divisors[np.newaxis, : values.shape[1]]


# ---------------------------------------------------------------------------
# Key handlers
# ---------------------------------------------------------------------------


def _handle_gpsp(cursor: GPMFCursor, window: tuple[float, float], state: DecoderState):
    values = cursor.values()
    if values is not None:
        state.dop = int(values.flat[0])


def _handle_gpsf(cursor: GPMFCursor, window: tuple[float, float], state: DecoderState):
    values = cursor.values()
    if values is not None:
        state.fix = GPSFix.from_code(int(values.flat[0]))


def _handle_scal(cursor: GPMFCursor, window: tuple[float, float], state: DecoderState):
    values = cursor.values()
    if values is None:
        return
    divisors = values.flatten()
    if np.any(divisors == 0):
        logger.warning("Ignoring SCAL with a zero divisor at offset %d", cursor.position)
        return
    state.divisors = divisors


def _handle_gpsu(cursor: GPMFCursor, window: tuple[float, float], state: DecoderState):
    text = cursor.value.decode("latin1")
    utc = parse_gpsu(text)
    if utc is None:
        logger.debug("Unparseable GPSU %r", text)
        return
    state.utc = utc
    if state.start_time is None:
        state.start_time = utc


def _handle_magn(cursor: GPMFCursor, window: tuple[float, float], state: DecoderState):
    values = cursor.values()
    if values is None or values.shape[1] < 2:
        return
    if state.divisors is not None:
        scaled = _apply_scal(values, state.divisors)
        if scaled is not None:
            values = scaled

    t_in, t_out = window
    repeat = values.shape[0]
    increment = (t_out - t_in) / repeat
    yaws = compute_yaw(values[:, 0], values[:, 1], state.magn_center)

    for i in range(repeat):
        state.attitudes.append(
            AttitudeSample(
                offset_from_base=timedelta(seconds=t_in + increment * i),
                yaw=float(yaws[i]),
            )
        )


def _handle_gps9(cursor: GPMFCursor, window: tuple[float, float], state: DecoderState):
    repeat = cursor.repeat
    divisors = state.divisors
    if repeat == 0 or divisors is None:
        return
    if cursor.struct_size != _GPS9_DTYPE.itemsize or divisors.shape[0] < 8:
        logger.warning(
            "Skipping GPS9 with struct size %d and %d divisors",
            cursor.struct_size,
            divisors.shape[0],
        )
        return

    if not state.has_gps9:
        state.has_gps9 = True
        if state.locations:
            logger.debug("GPS9 found; discarding %d GPS5 samples", len(state.locations))
            state.locations.clear()

    records = np.frombuffer(
        cursor.value,
        dtype=_GPS9_DTYPE,
        count=min(repeat, len(cursor.value) // _GPS9_DTYPE.itemsize),
    )
    if len(records) < repeat:
        logger.warning(
            "GPS9 at offset %d holds %d of %d records", cursor.position, len(records), repeat
        )
    for rec in records:
        state.locations.append(
            LocationSample(
                time=_gps9_time(int(rec["days"]), rec["seconds"] / divisors[6]),
                lat=rec["lat"] / divisors[0],
                lon=rec["lon"] / divisors[1],
                alt=rec["alt"] / divisors[2],
                ground_speed=rec["speed2d"] / divisors[3],
                virtual_speed=rec["speed3d"] / divisors[4],
                hdop=int(rec["dop"]),
                fix=GPSFix.from_code(int(rec["fix"])),
            )
        )


def _gps9_time(days: int, seconds: float) -> datetime | None:
    try:
        return EPOCH_2000 + timedelta(days=days, seconds=float(seconds))
    except (OverflowError, ValueError):
        logger.debug("GPS9 time out of range: %d days, %s s", days, seconds)
        return None


def _handle_gps5(cursor: GPMFCursor, window: tuple[float, float], state: DecoderState):
    if state.has_gps9 or cursor.repeat == 0 or state.divisors is None:
        return
    values = cursor.values()
    if values is None or values.shape[1] < 5:
        return
    scaled = _apply_scal(values, state.divisors)
    if scaled is None:
        logger.warning(
            "Skipping GPS5: %d divisors for %d fields",
            state.divisors.shape[0],
            values.shape[1],
        )
        return

    t_in, t_out = window
    increment = timedelta(seconds=(t_out - t_in) / scaled.shape[0])

    if state.dop > state.dop_threshold:
        # Unreliable fix: keep the clock running, emit nothing.
        if state.utc is not None:
            state.utc += increment
        return

    for row in scaled:
        previous = state.locations[-1] if state.locations else None
        if previous is not None and previous.time is not None and state.utc is not None:
            state.utc += increment
        state.locations.append(
            LocationSample(
                time=state.utc,
                lat=row[0],
                lon=row[1],
                alt=row[2],
                ground_speed=row[3],
                virtual_speed=row[4],
                hdop=state.dop,
                fix=state.fix,
            )
        )


_KEY_HANDLERS: dict[
    str, Callable[[GPMFCursor, tuple[float, float], DecoderState], None]
] = {
    "GPSP": _handle_gpsp,
    "GPSF": _handle_gpsf,
    "SCAL": _handle_scal,
    "GPSU": _handle_gpsu,
    "MAGN": _handle_magn,
    "GPS9": _handle_gps9,
    "GPS5": _handle_gps5,
}


# ---------------------------------------------------------------------------
# Payload-level decoding
# ---------------------------------------------------------------------------


def decode_payload(
    data: bytes,
    window: tuple[float, float],
    state: DecoderState,
    nest_limit: int | None = None,
) -> None:
    """Walk one GPMF payload and fold its samples into *state*.

    A payload that nests too deeply is abandoned at that point; samples it
    already produced are kept.
    """
    cursor = GPMFCursor(data, nest_limit=nest_limit)
    try:
        for entry in cursor.entries():
            key = entry.four_cc
            if key not in state.seen_keys:
                state.seen_keys.append(key)
            handler = _KEY_HANDLERS.get(key)
            if handler is not None:
                handler(entry, window, state)
    except GPMFNestingError as exc:
        logger.warning("Abandoning payload: %s", exc)
    finally:
        if state.device_name is None and cursor.device_name:
            state.device_name = cursor.device_name
        if state.device_id is None and cursor.device_id is not None:
            state.device_id = cursor.device_id


def _read_payload(cursor: ByteCursor, location: PayloadLocation) -> bytes | None:
    if location.offset <= 0 or location.offset + location.size > cursor.length:
        logger.debug(
            "Payload at %d (%d bytes) lies outside the file", location.offset, location.size
        )
        return None
    cursor.seek(location.offset)
    return cursor.read_bytes(location.size)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_telemetry(source: BinaryIO, file_name: str = "") -> Telemetry:
    """Decode all GPS and attitude telemetry from a seekable binary *source*.

    Raises :class:`~gpmf_reader.io.byte_cursor.EndOfDataError` only when the
    container's box framing itself cannot be read.  Corrupt boxes, payloads
    or KLV levels are skipped and partial telemetry is returned.
    """
    t0 = time.monotonic()
    cursor = ByteCursor(source)
    movie = walk_boxes(cursor)
    tables = movie.metadata

    if tables is None or not tables.payloads:
        logger.warning("No GPMF payloads found in %s", file_name or "source")
        return Telemetry(file_name=file_name, video_length_s=movie.video_length_s)

    state = DecoderState()
    for index, location in enumerate(tables.payloads):
        data = _read_payload(cursor, location)
        if data is None:
            continue
        decode_payload(data, movie.payload_window(index), state)

    start_time = state.start_time
    attitudes = [
        sample.model_copy(
            update={
                "time": start_time + sample.offset_from_base
                if start_time is not None
                else None
            }
        )
        for sample in state.attitudes
    ]

    logger.info(
        "Decoded %d GPMF payloads (%.1f s, device: %s) in %.2f s",
        len(tables.payloads),
        tables.metadata_length_s,
        state.device_name or "?",
        time.monotonic() - t0,
    )
    logger.info(
        "  GPS  %7d samples%s", len(state.locations), " (GPS9)" if state.has_gps9 else ""
    )
    logger.info("  MAGN %7d samples", len(attitudes))

    return Telemetry(
        file_name=file_name,
        device_name=state.device_name,
        device_id=state.device_id,
        start_time=start_time,
        creation_time=tables.creation_time,
        modification_time=tables.modification_time,
        video_length_s=movie.video_length_s,
        locations=state.locations,
        attitudes=attitudes,
        seen_keys=state.seen_keys,
    )


def read_telemetry(path: str | Path) -> Telemetry:
    """Open *path* and decode its telemetry."""
    path = Path(path)
    with open(path, "rb") as f:
        return decode_telemetry(f, file_name=path.name)

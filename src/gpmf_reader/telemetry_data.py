"""Telemetry data models decoded from the GPMF metadata track.

Container-level models (sample tables, payload locations) describe where the
telemetry lives inside the file; sample-level models carry the decoded GPS
and attitude values handed to downstream consumers.
"""

from __future__ import annotations

import datetime
from enum import StrEnum

import pandas as pd
import pandera.pandas as pa
import pydantic

# ---------------------------------------------------------------------------
# Sample table models
# ---------------------------------------------------------------------------


class SampleToChunk(pydantic.BaseModel):
    """One ``stsc`` run: chunks from ``first_chunk_index`` on hold the same count."""

    model_config = pydantic.ConfigDict(frozen=True)

    first_chunk_index: int
    samples_per_chunk: int
    sample_description_id: int


class TimeToSample(pydantic.BaseModel):
    """One ``stts`` run of ``sample_count`` samples lasting ``duration`` each."""

    model_config = pydantic.ConfigDict(frozen=True)

    sample_count: int
    duration: int


class PayloadLocation(pydantic.BaseModel):
    """Absolute byte range of one metadata sample in the file."""

    model_config = pydantic.ConfigDict(frozen=True)

    offset: int
    size: int


class SampleTables(pydantic.BaseModel):
    """Tables and timing of the metadata (``gpmd``) track."""

    timescale: int = 0
    duration: int = 0
    creation_time: datetime.datetime | None = None
    modification_time: datetime.datetime | None = None

    edit_offset: int = 0
    """Edit-list shift of the track, in movie timescale units."""

    sample_sizes: list[int] = pydantic.Field(default_factory=list)
    chunk_offsets: list[int] = pydantic.Field(default_factory=list)
    sample_to_chunk: list[SampleToChunk] = pydantic.Field(default_factory=list)
    time_to_sample: list[TimeToSample] = pydantic.Field(default_factory=list)

    metadata_length_s: float = 0.0
    """Total metadata stream duration in seconds."""

    base_sample_duration: float = 0.0
    """Nominal payload duration, in track timescale units."""

    payloads: list[PayloadLocation] = pydantic.Field(default_factory=list)

    @property
    def sample_count(self) -> int:
        return sum(run.sample_count for run in self.time_to_sample)


class MovieInfo(pydantic.BaseModel):
    """Result of walking the container box tree."""

    timescale: int = 0
    duration: int = 0
    video_length_s: float = 0.0
    track_count: int = 0
    metadata: SampleTables | None = None

    def payload_window(self, index: int) -> tuple[float, float]:
        """Return the ``(in, out)`` video-timeline seconds covered by payload *index*.

        Each payload spans one base sample duration; the last window is clamped
        to the metadata stream length and both ends are shifted by the track's
        edit-list offset.
        """
        tables = self.metadata
        if tables is None or not tables.payloads or tables.timescale <= 0:
            return 0.0, 0.0

        step = tables.base_sample_duration / tables.timescale
        t_in = index * step
        t_out = min((index + 1) * step, tables.metadata_length_s)

        if self.timescale > 0:
            shift = tables.edit_offset / self.timescale
            t_in += shift
            t_out += shift
        return t_in, t_out


# ---------------------------------------------------------------------------
# Decoded telemetry models
# ---------------------------------------------------------------------------


class GPSFix(StrEnum):
    NO_LOCK = "NO_LOCK"
    FIX_2D = "FIX_2D"
    FIX_3D = "FIX_3D"

    @classmethod
    def from_code(cls, code: int) -> GPSFix:
        """Map a raw GPSF / GPS9 fix code; unknown codes count as no lock."""
        return _FIX_CODES.get(int(code), cls.NO_LOCK)


_FIX_CODES: dict[int, GPSFix] = {
    0: GPSFix.NO_LOCK,
    2: GPSFix.FIX_2D,
    3: GPSFix.FIX_3D,
}


class LocationSample(pydantic.BaseModel):
    """One GPS position (from a GPS5 or GPS9 record)."""

    model_config = pydantic.ConfigDict(frozen=True)

    time: datetime.datetime | None = None
    lat: float
    lon: float
    alt: float
    ground_speed: float
    virtual_speed: float

    hdop: int = 0
    """Dilution of precision x 100, as stored by both GPSP and GPS9 (not divided by SCAL)."""

    fix: GPSFix = GPSFix.NO_LOCK


class AttitudeSample(pydantic.BaseModel):
    """One orientation sample derived from the magnetometer."""

    model_config = pydantic.ConfigDict(frozen=True)

    time: datetime.datetime | None = None
    offset_from_base: datetime.timedelta
    """Offset of the sample from the telemetry start time."""

    yaw: float | None = None
    pitch: float | None = None
    roll: float | None = None


class Telemetry(pydantic.BaseModel):
    """Everything decoded from one file; read-only once returned."""

    model_config = pydantic.ConfigDict(frozen=True)

    file_name: str = ""
    device_name: str | None = None
    device_id: int | None = None
    start_time: datetime.datetime | None = None

    creation_time: datetime.datetime | None = None
    modification_time: datetime.datetime | None = None
    video_length_s: float = 0.0

    locations: list[LocationSample] = pydantic.Field(default_factory=list)
    attitudes: list[AttitudeSample] = pydantic.Field(default_factory=list)

    seen_keys: list[str] = pydantic.Field(default_factory=list)

    def locations_frame(self) -> pd.DataFrame:
        """One row per location sample."""
        frame = pd.DataFrame(
            {
                "time": [s.time for s in self.locations],
                "lat": [s.lat for s in self.locations],
                "lon": [s.lon for s in self.locations],
                "alt": [s.alt for s in self.locations],
                "ground_speed": [s.ground_speed for s in self.locations],
                "virtual_speed": [s.virtual_speed for s in self.locations],
                "hdop": [s.hdop for s in self.locations],
                "fix": [str(s.fix) for s in self.locations],
            }
        )
        return location_frame_schema.validate(frame)

    def attitudes_frame(self) -> pd.DataFrame:
        """One row per attitude sample; absent angles become NaN."""
        frame = pd.DataFrame(
            {
                "time": [s.time for s in self.attitudes],
                "offset_s": [s.offset_from_base.total_seconds() for s in self.attitudes],
                "yaw": [s.yaw for s in self.attitudes],
                "pitch": [s.pitch for s in self.attitudes],
                "roll": [s.roll for s in self.attitudes],
            },
            dtype=object,
        )
        return attitude_frame_schema.validate(frame)


# ---------------------------------------------------------------------------
# Telemetry dataframe schemas
# ---------------------------------------------------------------------------

location_frame_schema = pa.DataFrameSchema(
    columns={
        "time": pa.Column(nullable=True),
        "lat": pa.Column(float, nullable=False),
        "lon": pa.Column(float, nullable=False),
        "alt": pa.Column(float, nullable=False),
        "ground_speed": pa.Column(float, nullable=False),
        "virtual_speed": pa.Column(float, nullable=False),
        "hdop": pa.Column(int, checks=pa.Check.ge(0), nullable=False),
        "fix": pa.Column(str, checks=pa.Check.isin([f.value for f in GPSFix])),
    },
    strict=True,
    coerce=True,
)

attitude_frame_schema = pa.DataFrameSchema(
    columns={
        "time": pa.Column(nullable=True),
        "offset_s": pa.Column(float, nullable=False),
        "yaw": pa.Column(
            float,
            checks=pa.Check.in_range(0.0, 360.0, include_max=False),
            nullable=True,
        ),
        # Not derived from the magnetometer; always NaN
        "pitch": pa.Column(float, nullable=True),
        "roll": pa.Column(float, nullable=True),
    },
    strict=True,
    coerce=True,
)

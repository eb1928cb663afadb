"""Extract GPS and magnetometer telemetry from GPMF metadata tracks."""

from gpmf_reader.processing.telemetry_decoder import decode_telemetry, read_telemetry
from gpmf_reader.telemetry_data import (
    AttitudeSample,
    GPSFix,
    LocationSample,
    Telemetry,
)

__version__ = "1.0.0"
__all__ = [
    "AttitudeSample",
    "GPSFix",
    "LocationSample",
    "Telemetry",
    "decode_telemetry",
    "read_telemetry",
]

"""
GPMF Reader Scripts Package

Command-line helpers built on the gpmf_reader library.

Available scripts:
- dump_gpmf_telemetry: Decode one file and log a telemetry summary
"""

__all__ = ["dump_gpmf_telemetry"]

"""Utility helpers for the gpmf_reader package."""

from __future__ import annotations

import logging
import math

import rich.console
import rich.logging

from gpmf_reader.telemetry_data import Telemetry


def setup_logging(verbose: bool = False):
    log_format = r"\[[bold]%(name)s[/bold]] %(message)s"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=log_format,
        datefmt="[%X]",
        handlers=[
            rich.logging.RichHandler(
                console=rich.console.Console(color_system="auto"),
                show_level=True,
                show_path=False,
                enable_link_path=False,
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                markup=True,
            )
        ],
    )


def format_duration(seconds: float) -> str:
    """Convert *seconds* to a human-readable duration string.

    Examples: ``"6m 23s"``, ``"1h 15m"``, ``"0m 0s"``.
    """
    total = int(math.floor(seconds))
    h, remainder = divmod(total, 3600)
    m, s = divmod(remainder, 60)

    if h > 0:
        return f"{h}h {m:02d}m" if m else f"{h}h 0m"
    return f"{m}m {s:02d}s" if m else f"0m {s}s"


def summarize_telemetry(telemetry: Telemetry) -> str:
    """Build a one-line summary such as ``"HERO9 Black · 1234 GPS · 560 MAGN · 5m 02s"``."""
    parts: list[str] = []

    if telemetry.device_name:
        parts.append(telemetry.device_name)

    parts.append(f"{len(telemetry.locations)} GPS")
    parts.append(f"{len(telemetry.attitudes)} MAGN")

    if telemetry.video_length_s:
        parts.append(format_duration(telemetry.video_length_s))

    if telemetry.start_time is not None:
        parts.append(f"start {telemetry.start_time.isoformat()}")

    return " · ".join(parts)

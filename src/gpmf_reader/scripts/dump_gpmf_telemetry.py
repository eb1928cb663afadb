#!/usr/bin/env python3
"""
GPMF Telemetry Dump Script

Decodes the GPMF metadata track of one MP4 file, logs a summary and
optionally writes the location / attitude samples to CSVs.
"""

import argparse
import logging
from pathlib import Path

from gpmf_reader.io.byte_cursor import EndOfDataError
from gpmf_reader.processing.telemetry_decoder import read_telemetry
from gpmf_reader.utils import setup_logging, summarize_telemetry

logger = logging.getLogger(__name__)


def dump_telemetry(mp4_path: Path, out_dir: Path | None) -> bool:
    """Decode *mp4_path*; write CSVs into *out_dir* when given."""
    try:
        telemetry = read_telemetry(mp4_path)
    except EndOfDataError as exc:
        logger.error("%s: unreadable container: %s", mp4_path.name, exc)
        return False

    logger.info("%s: %s", mp4_path.name, summarize_telemetry(telemetry))

    if telemetry.seen_keys:
        logger.debug("Keys: %s", ", ".join(telemetry.seen_keys))

    if not telemetry.locations and not telemetry.attitudes:
        logger.warning("%s: no telemetry found", mp4_path.name)
        return False

    if out_dir is None:
        return True

    out_dir.mkdir(parents=True, exist_ok=True)
    if telemetry.locations:
        gps_csv = out_dir / f"{mp4_path.stem}_gps.csv"
        telemetry.locations_frame().to_csv(gps_csv, index=False)
        logger.info("Wrote %s (%d rows)", gps_csv.name, len(telemetry.locations))
    if telemetry.attitudes:
        magn_csv = out_dir / f"{mp4_path.stem}_attitude.csv"
        telemetry.attitudes_frame().to_csv(magn_csv, index=False)
        logger.info("Wrote %s (%d rows)", magn_csv.name, len(telemetry.attitudes))
    return True


def main():
    parser = argparse.ArgumentParser(description="Dump GPMF telemetry from MP4 files")
    parser.add_argument("files", nargs="+", type=Path, help="MP4 files to decode")
    parser.add_argument("--out-dir", type=Path, help="Write CSVs to this directory")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging(args.verbose)

    results = []
    for mp4_path in args.files:
        if not mp4_path.is_file():
            logger.warning("%s: not a file", mp4_path)
            results.append(False)
            continue
        results.append(dump_telemetry(mp4_path, args.out_dir))

    logger.info(
        f"Summary: {sum(results)} decoded, {len(results) - sum(results)} failed/empty."
    )


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Build the subscribable ContinuumCon .ics calendar from _data/schedule.yml."""
import logging
import sys
from pathlib import Path
from schedule_to_ics_impl import DATA_FILE, OUT_FILE, EXIT_BAD_INPUT, schedule_to_ics

USAGE = "Usage: python schedule_to_ics.py [--no-backfill] [schedule.yml] [output.ics]"

def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    backfill = "--no-backfill" not in args
    args = [a for a in args if a != "--no-backfill"]
    if len(args) > 2 or any(a.startswith("-") for a in args):
        print(USAGE)
        return EXIT_BAD_INPUT
    schedule_path = Path(args[0]) if args else DATA_FILE
    ics_out = Path(args[1]) if len(args) > 1 else OUT_FILE
    return schedule_to_ics(schedule_path, ics_out, backfill=backfill)

if __name__ == "__main__":
    sys.exit(main())

"""Run a periodic job once, for schedulers that prefer a command to an HTTP call."""

import argparse
import json
import logging
import sys

from coachdesk.core import config
from coachdesk.database import SessionLocal, init_db
from coachdesk.services.dispatch import process_due_scheduled_messages
from coachdesk.services.rivalries import complete_expired_rivalries
from coachdesk.services.stats import calculate_booking_streaks
from coachdesk.services.workouts import check_missed_workouts

logger = logging.getLogger(__name__)

JOBS = {
    'process-scheduled-messages': process_due_scheduled_messages,
    'calculate-booking-streaks': calculate_booking_streaks,
    'check-missed-workouts': check_missed_workouts,
    'complete-expired-rivalries': complete_expired_rivalries,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='coachdesk-job', description=__doc__)
    parser.add_argument('job', choices=sorted(JOBS), help='job to run')
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    init_db()
    db = SessionLocal()
    try:
        result = JOBS[args.job](db)
    finally:
        db.close()

    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write('\n')
    return 0


if __name__ == '__main__':
    sys.exit(main())

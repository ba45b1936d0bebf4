from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import verify_cron_secret
from coachdesk.database import get_db
from coachdesk.services.dispatch import process_due_scheduled_messages
from coachdesk.services.rivalries import complete_expired_rivalries
from coachdesk.services.stats import calculate_booking_streaks
from coachdesk.services.workouts import check_missed_workouts

router = APIRouter(prefix='/api/cron', tags=['cron'], dependencies=[Depends(verify_cron_secret)])


@router.post('/process-scheduled-messages')
def run_scheduled_messages(db: Session = Depends(get_db)):
    return process_due_scheduled_messages(db)


@router.post('/calculate-booking-streaks')
def run_booking_streaks(db: Session = Depends(get_db)):
    return calculate_booking_streaks(db)


@router.post('/check-missed-workouts')
def run_missed_workouts(db: Session = Depends(get_db)):
    return check_missed_workouts(db)


@router.post('/complete-expired-rivalries')
def run_expired_rivalries(db: Session = Depends(get_db)):
    return complete_expired_rivalries(db)

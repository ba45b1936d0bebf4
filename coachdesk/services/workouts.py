"""Daily check for clients who skipped a scheduled workout."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.core.timeutils import as_utc, day_of_week, local_day_bounds, resolve_timezone, to_storage, utcnow
from coachdesk.models.training import (
    MISSED_WORKOUT_NOTIFICATION,
    CoachNotification,
    Program,
    ProgramAssignment,
    WorkoutLog,
)
from coachdesk.models.user import User
from coachdesk.services import events

logger = logging.getLogger(__name__)

DAY_NAMES = ('Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday')
MAX_SKIPPED_DETAILS = 20


def _completed_workout(db: Session, user_id: int, start: datetime, end: datetime) -> bool:
    return db.query(WorkoutLog.id).filter(
        WorkoutLog.user_id == user_id,
        WorkoutLog.started_at >= to_storage(start),
        WorkoutLog.started_at < to_storage(end),
        WorkoutLog.completed_at.is_not(None),
    ).first() is not None


def _already_notified(db: Session, assignment: ProgramAssignment, coach_id: int, since: datetime) -> bool:
    return db.query(CoachNotification.id).filter(
        CoachNotification.coach_id == coach_id,
        CoachNotification.client_id == assignment.user_id,
        CoachNotification.type == MISSED_WORKOUT_NOTIFICATION,
        CoachNotification.assignment_id == assignment.id,
        CoachNotification.created_at >= to_storage(since),
    ).first() is not None


def check_missed_workouts(db: Session, now: datetime | None = None) -> dict:
    """Notify coaches about scheduled workouts their clients skipped yesterday.

    "Yesterday" is the client's calendar day, so a client in Sydney and one
    in Denver are judged on their own dates. Each missed day produces at
    most one notification per assignment.
    """
    current = as_utc(now) if now else utcnow()
    logger.info('Checking for missed workouts at %s', current.isoformat())

    assignments = db.query(ProgramAssignment).filter(
        ProgramAssignment.is_active.is_(True),
        ProgramAssignment.scheduled_days.is_not(None),
    ).order_by(ProgramAssignment.id.asc()).all()
    logger.info('Found %d assignments with schedules', len(assignments))

    created = []
    skipped = []
    for assignment in assignments:
        client = db.get(User, assignment.user_id)
        client_name = (client.name if client else None) or 'Client'
        tz = resolve_timezone(client.timezone if client else None)
        yesterday = current.astimezone(tz).date() - timedelta(days=1)
        weekday = day_of_week(yesterday)

        if weekday not in (assignment.scheduled_days or []):
            skipped.append(f'{client_name} (not scheduled for {weekday})')
            continue

        start, end = local_day_bounds(yesterday, tz)
        if _completed_workout(db, assignment.user_id, start, end):
            skipped.append(f'{client_name} (completed workout)')
            continue

        program = db.get(Program, assignment.program_id)
        if program is None or program.coach_id is None:
            skipped.append(f'{client_name} (no coach found)')
            continue

        if _already_notified(db, assignment, program.coach_id, start):
            skipped.append(f'{client_name} (notification already sent)')
            continue

        day_name = DAY_NAMES[weekday]
        try:
            notification = CoachNotification(
                coach_id=program.coach_id,
                client_id=assignment.user_id,
                type=MISSED_WORKOUT_NOTIFICATION,
                title='Missed Workout',
                message=f'{client_name} missed their scheduled {day_name} workout.',
                assignment_id=assignment.id,
                data={
                    'program_name': program.name,
                    'missed_date': yesterday.isoformat(),
                    'day_of_week': weekday,
                },
            )
            db.add(notification)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception('Failed to create missed workout notification for %s', client_name)
            continue

        logger.info('Notification created: %s missed %s workout', client_name, day_name)
        events.emit('coach_notifications', events.INSERT, notification.id, (program.coach_id,))
        created.append(f'{client_name} -> coach')

    return {
        'success': True,
        'checkedAt': current.isoformat(),
        'notificationsCreated': len(created),
        'skipped': len(skipped),
        'details': {
            'created': created,
            'skipped': skipped[:MAX_SKIPPED_DETAILS],
        },
    }

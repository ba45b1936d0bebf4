"""Client booking statistics: attendance flags, weekly streaks and favorite times."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.core.timeutils import resolve_timezone, storage_now, to_storage
from coachdesk.models.availability import SESSION_TYPE
from coachdesk.models.booking import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_NO_SHOW,
    Booking,
    ClientBookingStats,
)
from coachdesk.models.user import User
from coachdesk.services.slots import calculate_favorite_times

logger = logging.getLogger(__name__)

ATTENDANCE_WINDOW_DAYS = 90
FLAG_THRESHOLD = 3
STREAK_WINDOW_DAYS = 7
FAVORITE_WINDOW_DAYS = 90


def get_or_create_stats(db: Session, client_id: int, coach_id: int) -> ClientBookingStats:
    stats = db.query(ClientBookingStats).filter(
        ClientBookingStats.client_id == client_id,
        ClientBookingStats.coach_id == coach_id,
    ).first()
    if stats is None:
        stats = ClientBookingStats(
            client_id=client_id,
            coach_id=coach_id,
            current_streak_weeks=0,
            longest_streak_weeks=0,
            no_show_count_90d=0,
            cancellation_count_90d=0,
            is_flagged=False,
            favorite_times=[],
        )
        db.add(stats)
        db.flush()
    return stats


def refresh_attendance_stats(db: Session, client_id: int, coach_id: int, now: datetime | None = None) -> ClientBookingStats:
    """Recount no-shows and cancellations over the trailing 90 days.

    Three or more of either flags the client. Runs in the caller's transaction.
    """
    cutoff = (to_storage(now) if now else storage_now()) - timedelta(days=ATTENDANCE_WINDOW_DAYS)
    scope = db.query(Booking).filter(Booking.client_id == client_id, Booking.coach_id == coach_id)

    no_shows = scope.filter(Booking.status == STATUS_NO_SHOW, Booking.updated_at >= cutoff).count()
    cancellations = scope.filter(Booking.status == STATUS_CANCELLED, Booking.cancelled_at >= cutoff).count()

    stats = get_or_create_stats(db, client_id, coach_id)
    stats.no_show_count_90d = no_shows
    stats.cancellation_count_90d = cancellations
    stats.is_flagged = no_shows >= FLAG_THRESHOLD or cancellations >= FLAG_THRESHOLD
    return stats


def _completed_session_starts(db: Session, stats: ClientBookingStats, since: datetime, until: datetime) -> list[datetime]:
    rows = db.query(Booking.starts_at).filter(
        Booking.client_id == stats.client_id,
        Booking.coach_id == stats.coach_id,
        Booking.status == STATUS_COMPLETED,
        Booking.booking_type == SESSION_TYPE,
        Booking.starts_at >= since,
        Booking.starts_at <= until,
    ).all()
    return [starts_at for (starts_at,) in rows]


def _ensure_stats_rows(db: Session) -> None:
    pairs = db.query(Booking.client_id, Booking.coach_id).filter(
        Booking.client_id.is_not(None),
    ).distinct().all()
    for client_id, coach_id in pairs:
        get_or_create_stats(db, client_id, coach_id)
    db.commit()


def calculate_booking_streaks(db: Session, now: datetime | None = None) -> dict:
    """Weekly pass over every client/coach pair.

    A completed session in the last seven days extends the streak, otherwise
    it resets. Favorite times are rebuilt from the last 90 days of completed
    sessions in the coach's timezone. A failing row is logged and skipped.
    """
    current = to_storage(now) if now else storage_now()
    logger.info('Processing booking streaks at %s', current.isoformat())

    _ensure_stats_rows(db)
    all_stats = db.query(ClientBookingStats).order_by(ClientBookingStats.id.asc()).all()
    logger.info('Found %d client stats records to process', len(all_stats))

    results = []
    for stats in all_stats:
        stats_id = stats.id
        try:
            coach = db.get(User, stats.coach_id)
            tz = resolve_timezone(coach.timezone if coach else None)

            recent = _completed_session_starts(db, stats, current - timedelta(days=STREAK_WINDOW_DAYS), current)
            previous_streak = stats.current_streak_weeks or 0
            had_completed_session = bool(recent)

            if had_completed_session:
                new_streak = previous_streak + 1
                longest = max(stats.longest_streak_weeks or 0, new_streak)
            else:
                new_streak = 0
                longest = stats.longest_streak_weeks or 0

            history = _completed_session_starts(db, stats, current - timedelta(days=FAVORITE_WINDOW_DAYS), current)
            favorite_times = calculate_favorite_times(history, tz)

            stats.current_streak_weeks = new_streak
            stats.longest_streak_weeks = longest
            stats.favorite_times = favorite_times
            stats.last_streak_update = current
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception('Failed to update booking stats %s', stats_id)
            continue

        results.append({
            'clientId': stats.client_id,
            'coachId': stats.coach_id,
            'previousStreak': previous_streak,
            'newStreak': new_streak,
            'longestStreak': longest,
            'hadCompletedSession': had_completed_session,
            'favoriteTimes': favorite_times,
        })

    return {
        'processedAt': current.isoformat(),
        'totalProcessed': len(results),
        'streaksIncremented': sum(1 for r in results if r['newStreak'] > r['previousStreak']),
        'streaksReset': sum(1 for r in results if r['newStreak'] == 0 and r['previousStreak'] > 0),
        'details': results,
    }

"""Close habit rivalries whose end date has passed and pick the winner."""

import logging
from datetime import date

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.core.timeutils import utcnow
from coachdesk.models.habit import RIVALRY_ACTIVE, RIVALRY_COMPLETED, ClientHabit, HabitCompletion, HabitRivalry

logger = logging.getLogger(__name__)


def count_rivalry_completions(db: Session, rivalry: HabitRivalry, client_id: int) -> int:
    """Completions of the rivalry's habits by ``client_id``, both end dates inclusive."""
    return db.query(HabitCompletion).join(
        ClientHabit, ClientHabit.id == HabitCompletion.client_habit_id,
    ).filter(
        ClientHabit.rivalry_id == rivalry.id,
        HabitCompletion.client_id == client_id,
        HabitCompletion.completed_date >= rivalry.start_date,
        HabitCompletion.completed_date <= rivalry.end_date,
    ).count()


def pick_winner(rivalry: HabitRivalry, challenger_count: int, opponent_count: int) -> int | None:
    if challenger_count > opponent_count:
        return rivalry.challenger_id
    if opponent_count > challenger_count:
        return rivalry.opponent_id
    return None


def complete_expired_rivalries(db: Session, today: date | None = None) -> dict:
    """Complete every active rivalry that ended before ``today`` (UTC)."""
    today = today or utcnow().date()

    expired = db.query(HabitRivalry).filter(
        HabitRivalry.status == RIVALRY_ACTIVE,
        HabitRivalry.end_date < today,
    ).order_by(HabitRivalry.id.asc()).all()

    if not expired:
        return {'message': 'No expired rivalries to process', 'processed': 0, 'results': []}

    logger.info('Found %d expired rivalries to complete', len(expired))

    results = []
    for rivalry in expired:
        rivalry_id, name = rivalry.id, rivalry.name
        try:
            challenger_count = count_rivalry_completions(db, rivalry, rivalry.challenger_id)
            opponent_count = count_rivalry_completions(db, rivalry, rivalry.opponent_id)
            winner_id = pick_winner(rivalry, challenger_count, opponent_count)

            rivalry.status = RIVALRY_COMPLETED
            rivalry.winner_id = winner_id
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Error updating rivalry %s', rivalry_id)
            results.append({'id': rivalry_id, 'name': name, 'success': False, 'error': str(exc)})
            continue

        logger.info(
            'Completed rivalry %s (%s): challenger %d, opponent %d, winner %s',
            name, rivalry_id, challenger_count, opponent_count, winner_id or 'TIE',
        )
        results.append({
            'id': rivalry_id,
            'name': name,
            'success': True,
            'scores': {'challenger': challenger_count, 'opponent': opponent_count},
            'winnerId': winner_id,
        })

    return {
        'message': f'Processed {len(results)} expired rivalries',
        'processed': len(results),
        'results': results,
    }

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from arena.models import TournamentLogEntry

CREATED = "created"
PARTICIPANT_JOINED = "participant_joined"
SCORE_SUBMITTED = "score_submitted"
STARTED = "started"
ENDED = "ended"
ARCHIVED = "archived"
PRIZE_DISTRIBUTED = "prize_distributed"


def log_tournament_event(db: Session, tournament_id: str, event_type: str, at: datetime,
                         data: Optional[Dict[str, Any]] = None, user_id: Optional[str] = None) -> None:
    """Append an audit entry; committed with the caller's transaction."""
    db.add(TournamentLogEntry(
        tournament_id=tournament_id,
        event_type=event_type,
        event_data=data or {},
        user_id=user_id,
        created_at=at,
    ))

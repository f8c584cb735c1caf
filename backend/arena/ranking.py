"""
Ranking rules shared by every leaderboard read.

Order is ``score DESC``, then the timestamp at which the score was first
reached ``ASC`` (the first player to reach a score outranks later ties), then
``user_id ASC`` so the order is total. Ranks are 1-based row positions.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Tuple, TypeVar

from sqlalchemy import and_, or_

T = TypeVar("T")


def order_clauses(score_col, achieved_col, user_col) -> Tuple:
    """ORDER BY clauses implementing the ranking rule. Unscored rows sort last."""
    return (score_col.desc(), achieved_col.asc().nulls_last(), user_col.asc())


def outranks_clause(score_col, achieved_col, user_col, score: int,
                    achieved_at: Optional[datetime], user_id: str):
    """
    Filter selecting rows strictly ahead of ``(score, achieved_at, user_id)``.

    ``COUNT(*) + 1`` over this filter is that row's rank.
    """
    if achieved_at is None:
        return or_(
            score_col > score,
            and_(score_col == score, achieved_col.isnot(None)),
            and_(score_col == score, achieved_col.is_(None), user_col < user_id),
        )
    return or_(
        score_col > score,
        and_(score_col == score, achieved_col < achieved_at),
        and_(score_col == score, achieved_col == achieved_at, user_col < user_id),
    )


def assign_ranks(rows: Iterable[T], offset: int = 0) -> List[Tuple[int, T]]:
    """Pair already-ordered rows with their 1-based rank."""
    return [(offset + idx + 1, row) for idx, row in enumerate(rows)]


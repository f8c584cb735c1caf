from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from arena.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class TournamentStatus(str, Enum):
    """Tournament lifecycle states. Transitions only move forward."""
    UPCOMING = "upcoming"
    REGISTRATION = "registration"
    ACTIVE = "active"
    ENDED = "ended"
    ARCHIVED = "archived"


class LinkStatus(str, Enum):
    """Per-tournament consumption state of a log event."""
    PROCESSED = "processed"
    REJECTED = "rejected"
    FAILED = "failed"


class Event(Base):
    """
    Row of the external append-only gameplay log.

    This core only reads ``game_ended`` rows and writes back the global
    processing markers (``processed_at``, ``processing_attempts``,
    ``processing_error``). Rows are never deleted.
    """
    __tablename__ = "events"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    received_at = Column(DateTime, nullable=False, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)
    processing_attempts = Column(Integer, nullable=False, default=0)
    processing_error = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_events_type_unprocessed', event_type, processed_at, received_at),
        Index('idx_events_user_received', user_id, received_at),
    )


class TournamentEventLink(Base):
    """Records that an event was consumed (or failed) for one tournament."""
    __tablename__ = "tournament_event_links"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tournament_id = Column(String(36), ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False)
    event_id = Column(BigInteger, ForeignKey("events.id"), nullable=False)
    status = Column(String(20), nullable=False, default=LinkStatus.PROCESSED.value)
    attempts = Column(Integer, nullable=False, default=1)
    error = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('tournament_id', 'event_id', name='uq_tournament_event'),
    )


class GlobalStanding(Base):
    """Aggregated all-time standing per user."""
    __tablename__ = "leaderboard_global"

    user_id = Column(String(64), primary_key=True)
    nickname = Column(String(100), nullable=True)
    high_score = Column(Integer, nullable=False, default=0)
    high_score_at = Column(DateTime, nullable=False)
    total_games = Column(Integer, nullable=False, default=0)
    total_playtime_seconds = Column(BigInteger, nullable=False, default=0)
    last_played_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    # Descending index for fast top-N queries under the ranking order
    __table_args__ = (
        Index('idx_leaderboard_global_rank', high_score.desc(), high_score_at, user_id),
    )


class Tournament(Base):
    """Time-boxed competition with a tiered prize table."""
    __tablename__ = "tournaments"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    tournament_type = Column(String(50), nullable=False, default="weekly")
    status = Column(String(20), nullable=False, default=TournamentStatus.UPCOMING.value, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    prize_pool = Column(Integer, nullable=False, default=0)
    prize_distribution = Column(JSON, nullable=True)
    max_participants = Column(Integer, nullable=True)
    prizes_calculated = Column(Boolean, nullable=False, default=False)
    prizes_calculated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_tournaments_dates', start_date, end_date),
    )


class TournamentParticipant(Base):
    """A player's standing inside one tournament."""
    __tablename__ = "tournament_participants"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tournament_id = Column(String(36), ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    player_name = Column(String(255), nullable=False)
    registered_at = Column(DateTime, nullable=False)
    best_score = Column(Integer, nullable=False, default=0)
    best_score_at = Column(DateTime, nullable=True)
    total_games = Column(Integer, nullable=False, default=0)
    final_rank = Column(Integer, nullable=True)
    prize_won = Column(Integer, nullable=False, default=0)
    prize_claimed = Column(Boolean, nullable=False, default=False)
    prize_claimed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('tournament_id', 'user_id', name='uq_tournament_participant'),
        Index('idx_participants_rank', tournament_id, best_score.desc(), best_score_at),
    )


class LeaderboardSnapshot(Base):
    """
    Immutable audit row of a standing at a point in time.

    ``tournament_id`` is NULL for global snapshots. Rows with ``is_final`` set
    are the source of truth for prize payout.
    """
    __tablename__ = "leaderboard_snapshots"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tournament_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(64), nullable=False)
    player_name = Column(String(255), nullable=True)
    score = Column(Integer, nullable=False)
    rank = Column(Integer, nullable=False)
    is_final = Column(Boolean, nullable=False, default=False)
    snapshot_time = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_snapshots_final', tournament_id, is_final, rank),
        # One final standing per player and tournament
        Index('uq_snapshots_final_user', tournament_id, user_id, unique=True,
              postgresql_where=is_final.is_(True), sqlite_where=is_final.is_(True)),
    )


class Prize(Base):
    """Prize awarded to one winner of one tournament."""
    __tablename__ = "prizes"

    prize_id = Column(String(255), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    tournament_id = Column(String(36), nullable=False)
    tournament_name = Column(String(255), nullable=False)
    rank = Column(Integer, nullable=False)
    coins = Column(Integer, nullable=False, default=0)
    gems = Column(Integer, nullable=False, default=0)
    awarded_at = Column(DateTime, nullable=False)
    # Per-currency progress; credited_at is set once every currency has landed
    coins_credited_at = Column(DateTime, nullable=True)
    gems_credited_at = Column(DateTime, nullable=True)
    credited_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    # At most one prize per (tournament, user)
    __table_args__ = (
        UniqueConstraint('tournament_id', 'user_id', name='uq_prize_tournament_user'),
        Index('idx_prizes_tournament_rank', tournament_id, rank),
    )


class AntiCheatLog(Base):
    """Append-only audit of every anti-cheat decision, accepted ones included."""
    __tablename__ = "anti_cheat_logs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    event_id = Column(BigInteger, nullable=True, index=True)
    score = Column(Integer, nullable=True)
    survival_time_ms = Column(Integer, nullable=True)
    game_duration_ms = Column(Integer, nullable=True)
    device_fingerprint = Column(String(255), nullable=True)
    accepted = Column(Boolean, nullable=False)
    confidence = Column(Float, nullable=False)
    severity = Column(String(20), nullable=False)
    patterns = Column(JSON, nullable=False, default=list)
    reason = Column(Text, nullable=True)
    submitted_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_anti_cheat_user_submitted', user_id, submitted_at),
    )


class PlayerAccount(Base):
    """Currency balances of a player."""
    __tablename__ = "player_accounts"

    user_id = Column(String(64), primary_key=True)
    coins_balance = Column(BigInteger, nullable=False, default=0)
    gems_balance = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, nullable=True)


class CurrencyTransaction(Base):
    """Ledger entry for every balance change."""
    __tablename__ = "currency_transactions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    transaction_type = Column(String(20), nullable=False)
    currency = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    previous_balance = Column(BigInteger, nullable=False)
    new_balance = Column(BigInteger, nullable=False)
    reason = Column(Text, nullable=True)
    tournament_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False)


class TournamentLogEntry(Base):
    """Audit trail of tournament lifecycle events."""
    __tablename__ = "tournament_log"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tournament_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False)


class CacheMetadata(Base):
    """Bookkeeping for refreshed leaderboard caches."""
    __tablename__ = "leaderboard_cache_metadata"

    cache_key = Column(String(255), primary_key=True)
    last_updated_at = Column(DateTime, nullable=False)
    entry_count = Column(Integer, nullable=False, default=0)

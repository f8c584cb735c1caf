from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, List, Optional


class ScoreSubmission(BaseModel):
    """
    A reported game result as seen by the anti-cheat engine.

    Bounds are deliberately not enforced here: out-of-range values are judged
    by the engine so they show up in the audit log with a reason.

    Example:
        {
            "user_id": "device-123",
            "score": 500,
            "survival_time_ms": 60000,
            "game_duration_ms": 61000
        }
    """
    user_id: str = Field(..., min_length=1, description="Player / device identifier", examples=["device-123"])
    score: int = Field(..., description="Reported score", examples=[500])
    survival_time_ms: Optional[int] = Field(None, description="Time survived in milliseconds", examples=[60000])
    game_duration_ms: Optional[int] = Field(None, description="Wall-clock game duration in milliseconds", examples=[61000])
    device_fingerprint: Optional[str] = Field(None, description="Opaque device fingerprint")
    submitted_at: Optional[datetime] = Field(None, description="When the result was reported (UTC)")
    event_id: Optional[int] = Field(None, description="Log event carrying this result, if any")


class HistoryEntry(BaseModel):
    """One previous submission used by rate, duplicate and improvement checks."""
    score: int
    survival_time_ms: Optional[int] = None
    device_fingerprint: Optional[str] = None
    accepted: bool = True
    submitted_at: datetime


class ValidationResult(BaseModel):
    """
    Outcome of an anti-cheat validation.

    Example:
        {
            "accepted": false,
            "confidence": 0.7,
            "severity": "critical",
            "reason": "Suspicious score-to-time ratio: 70.00 points/second (max: 10.0)",
            "reasons": ["Suspicious score-to-time ratio: 70.00 points/second (max: 10.0)"],
            "patterns": ["SUSPICIOUS_RATIO"]
        }
    """
    accepted: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    severity: str = Field(..., description="info, warning or critical")
    reason: Optional[str] = Field(None, description="Strongest violated rule")
    reasons: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)


class LeaderboardEntry(BaseModel):
    """
    Schema for a single ranked standing.

    Example:
        {
            "rank": 1,
            "user_id": "device-456",
            "player_name": "Ace",
            "score": 9000,
            "achieved_at": "2026-02-12T10:30:00",
            "total_games": 50
        }
    """
    rank: int = Field(..., description="Position under the ranking rule (1 = highest)", examples=[1])
    user_id: str = Field(..., description="Unique user identifier")
    player_name: Optional[str] = Field(None, description="Display name")
    score: int = Field(..., description="High score / best score in scope")
    achieved_at: Optional[datetime] = Field(None, description="When the score was first reached")
    total_games: int = Field(0, description="Games counted in scope")

    class Config:
        from_attributes = True


class GlobalLeaderboardResponse(BaseModel):
    leaderboard: List[LeaderboardEntry]
    user_position: Optional[LeaderboardEntry] = None
    total_players: int
    timestamp: datetime


class TournamentSummary(BaseModel):
    """Public view of a tournament."""
    id: str
    name: str
    tournament_type: str
    status: str
    start_date: datetime
    end_date: datetime
    prize_pool: int
    participant_count: int = 0

    class Config:
        from_attributes = True


class RegistrationResult(BaseModel):
    participant_id: int
    tournament_id: str
    user_id: str
    message: str = "Successfully registered for tournament"


class SubmissionResult(BaseModel):
    """
    Result of a direct tournament score submission.

    Example:
        {
            "new_best": true,
            "score": 900,
            "previous_best": 700,
            "rank": 1,
            "total_games": 3
        }
    """
    new_best: bool
    score: int
    previous_best: int
    rank: Optional[int]
    total_games: int
    validation: Optional[ValidationResult] = None


class PlayerStats(BaseModel):
    tournaments_joined: int = 0
    best_rank: Optional[int] = None
    total_prizes: int = 0
    current_tournament_rank: Optional[int] = None


class AggregationResult(BaseModel):
    """Counters reported by one aggregator pass."""
    success: bool = True
    scope: str
    processed: int = 0
    rejected: int = 0
    errors: int = 0
    skipped: int = 0
    duration_ms: int = 0
    error: Optional[str] = None


class PrizeAward(BaseModel):
    user_id: str
    player_name: Optional[str] = None
    rank: int
    coins: int
    gems: int
    credited: bool = False


class PrizeCalculationResult(BaseModel):
    tournament_id: str
    tournament_name: Optional[str] = None
    participants: int = 0
    prizes_awarded: int = 0
    already_awarded: int = 0
    prize_details: List[PrizeAward] = Field(default_factory=list)
    duration_ms: int = 0


class PrizeOut(BaseModel):
    prize_id: str
    tournament_id: str
    tournament_name: str
    rank: int
    coins: int
    gems: int
    awarded_at: datetime
    credited_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EndTournamentResult(BaseModel):
    tournament_id: str
    final_standings: List[LeaderboardEntry]
    prizes: PrizeCalculationResult


class JobStatus(BaseModel):
    name: str
    interval_seconds: float
    running: bool
    runs: int
    failures: int
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Optional[Any] = None


class HealthResponse(BaseModel):
    status: str
    database: str
    cache: str
    scheduler: str
    timestamp: datetime

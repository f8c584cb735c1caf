"""Domain exceptions for tournament, scoring and prize operations.

Each error carries a stable code for programmatic handling and a message that
is safe to show to the player.
"""
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable error codes."""

    INVALID_REQUEST = "INVALID_REQUEST"
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    TOURNAMENT_NOT_ACTIVE = "TOURNAMENT_NOT_ACTIVE"
    REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
    TOURNAMENT_FULL = "TOURNAMENT_FULL"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    NOT_REGISTERED = "NOT_REGISTERED"
    SCORE_REJECTED = "SCORE_REJECTED"
    PRIZE_NOT_FOUND = "PRIZE_NOT_FOUND"


class ArenaError(Exception):
    """Base exception for competitive-integrity errors.

    Attributes:
        code: Error code for programmatic handling
        message: User-facing error message
        details: Additional error details
        status_code: HTTP status the ops API maps this error to
    """

    status_code = 400

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code.value
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(ArenaError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(ErrorCode.INVALID_REQUEST, message, {"field": field} if field else None)


class TournamentNotFoundError(ArenaError):
    status_code = 404

    def __init__(self, tournament_id: str):
        super().__init__(
            ErrorCode.TOURNAMENT_NOT_FOUND,
            "Tournament not found",
            {"tournament_id": tournament_id},
        )


class TournamentNotActiveError(ArenaError):
    status_code = 409

    def __init__(self, tournament_id: str, status: str):
        super().__init__(
            ErrorCode.TOURNAMENT_NOT_ACTIVE,
            "Tournament is not accepting scores",
            {"tournament_id": tournament_id, "status": status},
        )


class RegistrationClosedError(ArenaError):
    status_code = 409

    def __init__(self, tournament_id: str):
        super().__init__(
            ErrorCode.REGISTRATION_CLOSED,
            "Tournament registration is closed",
            {"tournament_id": tournament_id},
        )


class TournamentFullError(ArenaError):
    status_code = 409

    def __init__(self, tournament_id: str, max_participants: int):
        super().__init__(
            ErrorCode.TOURNAMENT_FULL,
            "Tournament is full",
            {"tournament_id": tournament_id, "max_participants": max_participants},
        )


class AlreadyRegisteredError(ArenaError):
    status_code = 409

    def __init__(self, tournament_id: str, user_id: str):
        super().__init__(
            ErrorCode.ALREADY_REGISTERED,
            "Player is already registered for this tournament",
            {"tournament_id": tournament_id, "user_id": user_id},
        )


class NotRegisteredError(ArenaError):
    status_code = 403

    def __init__(self, tournament_id: str, user_id: str):
        super().__init__(
            ErrorCode.NOT_REGISTERED,
            "Player is not registered for this tournament",
            {"tournament_id": tournament_id, "user_id": user_id},
        )


class ScoreRejectedError(ArenaError):
    """Anti-cheat rejected a submission; ``message`` names the strongest rule."""

    status_code = 422

    def __init__(self, reason: str, patterns: list[str], severity: str):
        super().__init__(
            ErrorCode.SCORE_REJECTED,
            reason,
            {"patterns": patterns, "severity": severity},
        )


class PrizeNotFoundError(ArenaError):
    status_code = 404

    def __init__(self, prize_id: str):
        super().__init__(ErrorCode.PRIZE_NOT_FOUND, "Prize not found", {"prize_id": prize_id})

"""
Anti-cheat validation for reported scores.

Validation is a fixed pipeline of pure check functions. Each check looks at the
submission and the player's recent history and returns a ``CheckOutcome``;
``decide`` folds the outcomes into one ``ValidationResult``. The engine adds the
side effects around that: loading history from the audit log, writing an audit
row for every decision and failing open on internal errors.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, func
from sqlalchemy.orm import sessionmaker

from arena.clock import Clock, utcnow
from arena.config import Settings, get_settings
from arena.models import AntiCheatLog, Event
from arena.monitoring import record_custom_event, record_custom_metric
from arena.schemas import HistoryEntry, ScoreSubmission, ValidationResult

logger = logging.getLogger(__name__)

# Pattern codes stored in the audit log
INVALID_DATA = "INVALID_DATA"
IMPOSSIBLE_IMPROVEMENT = "IMPOSSIBLE_IMPROVEMENT"
SUSPICIOUS_RATIO = "SUSPICIOUS_RATIO"
RAPID_SUBMISSION = "RAPID_SUBMISSION"
DUPLICATE_SCORE = "DUPLICATE_SCORE"
DEVICE_SPOOFING = "DEVICE_SPOOFING"
TIME_MANIPULATION = "TIME_MANIPULATION"
VALIDATION_ERROR = "VALIDATION_ERROR"

FAIL_OPEN_REASON = "Anti-cheat validation failed, allowing submission"


class Verdict(str, Enum):
    ACCEPT = "accept"
    SUSPICIOUS = "suspicious"
    REJECT = "reject"


@dataclass(frozen=True)
class CheckOutcome:
    """Result of one check. ``SUSPICIOUS`` is a warning, ``REJECT`` is critical."""
    verdict: Verdict
    reason: Optional[str] = None
    pattern: Optional[str] = None

    @property
    def severity(self) -> str:
        if self.verdict == Verdict.REJECT:
            return "critical"
        if self.verdict == Verdict.SUSPICIOUS:
            return "warning"
        return "info"


ACCEPT = CheckOutcome(Verdict.ACCEPT)


def suspicious(reason: str, pattern: str) -> CheckOutcome:
    return CheckOutcome(Verdict.SUSPICIOUS, reason, pattern)


def reject(reason: str, pattern: str) -> CheckOutcome:
    return CheckOutcome(Verdict.REJECT, reason, pattern)


# ============================================================================
# Checks
# ============================================================================
#
# Signature: (submission, history, now, settings) -> CheckOutcome.
# ``history`` holds earlier submissions of the same player, newest first.

def check_score_bounds(sub: ScoreSubmission, history, now, settings: Settings) -> CheckOutcome:
    if sub.score < 0:
        return reject("Invalid score: must be a non-negative number", INVALID_DATA)
    if sub.score > settings.max_score:
        return reject(
            f"Score exceeds maximum allowed value ({sub.score} > {settings.max_score})",
            INVALID_DATA,
        )
    return ACCEPT


def check_game_duration(sub: ScoreSubmission, history, now, settings: Settings) -> CheckOutcome:
    duration = sub.game_duration_ms
    if duration is None:
        return ACCEPT
    if duration < settings.min_game_duration_ms or duration > settings.max_game_duration_ms:
        return suspicious(
            f"Invalid game duration: {duration}ms "
            f"(allowed: {settings.min_game_duration_ms}-{settings.max_game_duration_ms}ms)",
            TIME_MANIPULATION,
        )
    return ACCEPT


def check_score_ratio(sub: ScoreSubmission, history, now, settings: Settings) -> CheckOutcome:
    if not sub.survival_time_ms or sub.survival_time_ms <= 0:
        return ACCEPT

    score_per_second = sub.score / (sub.survival_time_ms / 1000)
    if score_per_second > settings.max_score_per_second:
        return reject(
            f"Suspicious score-to-time ratio: {score_per_second:.2f} points/second "
            f"(max: {settings.max_score_per_second})",
            SUSPICIOUS_RATIO,
        )
    return ACCEPT


def check_improvement(sub: ScoreSubmission, history: Sequence[HistoryEntry], now,
                      settings: Settings) -> CheckOutcome:
    """Flag a jump far above both the recent average and the recent best."""
    scores = [h.score for h in history if h.accepted][:settings.recent_history_size]
    if not scores:
        return ACCEPT

    avg_score = sum(scores) / len(scores)
    if avg_score == 0:
        return ACCEPT

    max_score = max(scores)
    improvement = sub.score - avg_score
    if improvement > avg_score * (settings.max_improvement_factor - 1) and sub.score > max_score * 1.5:
        return reject(
            f"Impossible improvement: {improvement:.0f} points "
            f"({improvement / avg_score * 100:.1f}% increase)",
            IMPOSSIBLE_IMPROVEMENT,
        )
    return ACCEPT


def check_submission_rate(sub: ScoreSubmission, history: Sequence[HistoryEntry], now: datetime,
                          settings: Settings) -> CheckOutcome:
    window_start = now - timedelta(milliseconds=settings.rapid_submission_window_ms)
    recent = sum(1 for h in history if window_start <= h.submitted_at <= now)
    if recent >= settings.max_submissions_per_window:
        return suspicious(
            f"Too many submissions: {recent} in last {settings.rapid_submission_window_ms // 1000}s",
            RAPID_SUBMISSION,
        )
    return ACCEPT


def check_duplicate(sub: ScoreSubmission, history: Sequence[HistoryEntry], now: datetime,
                    settings: Settings) -> CheckOutcome:
    window_start = now - timedelta(seconds=settings.duplicate_window_seconds)
    for h in history:
        if not window_start <= h.submitted_at <= now:
            continue
        if h.score == sub.score and h.survival_time_ms == sub.survival_time_ms:
            return suspicious("Duplicate score detected within 1 hour", DUPLICATE_SCORE)
    return ACCEPT


def check_time_consistency(sub: ScoreSubmission, history, now, settings: Settings) -> CheckOutcome:
    if sub.survival_time_ms is None or sub.game_duration_ms is None:
        return ACCEPT
    if sub.survival_time_ms > sub.game_duration_ms * 1.1:
        return reject(
            f"Survival time ({sub.survival_time_ms}ms) exceeds game duration ({sub.game_duration_ms}ms)",
            TIME_MANIPULATION,
        )
    return ACCEPT


def check_device_fingerprint(sub: ScoreSubmission, history: Sequence[HistoryEntry], now: datetime,
                             settings: Settings) -> CheckOutcome:
    if not sub.device_fingerprint:
        return ACCEPT

    window_start = now - timedelta(days=settings.fingerprint_lookback_days)
    known = {
        h.device_fingerprint for h in history
        if h.device_fingerprint and window_start <= h.submitted_at <= now
    }
    if known and sub.device_fingerprint not in known:
        return suspicious("Device fingerprint mismatch detected", DEVICE_SPOOFING)
    return ACCEPT


CHECKS: Sequence[Callable[..., CheckOutcome]] = (
    check_score_bounds,
    check_game_duration,
    check_score_ratio,
    check_improvement,
    check_submission_rate,
    check_duplicate,
    check_time_consistency,
    check_device_fingerprint,
)


def decide(outcomes: Sequence[CheckOutcome], threshold: int) -> ValidationResult:
    """
    Combine check outcomes into a decision.

    Any critical outcome rejects, as does reaching ``threshold`` violations of
    any severity. ``reason`` is the first critical violation, otherwise the
    first warning.
    """
    violations = [o for o in outcomes if o.verdict != Verdict.ACCEPT]
    if not violations:
        return ValidationResult(accepted=True, confidence=1.0, severity="info")

    critical = [o for o in violations if o.verdict == Verdict.REJECT]
    rejected = bool(critical) or len(violations) >= threshold
    confidence = round(max(0.0, 1.0 - 0.3 * len(violations)), 2)

    return ValidationResult(
        accepted=not rejected,
        confidence=confidence,
        severity="critical" if critical else "warning",
        reason=(critical or violations)[0].reason,
        reasons=[o.reason for o in violations],
        patterns=[o.pattern for o in violations],
    )


def fail_open_result() -> ValidationResult:
    return ValidationResult(
        accepted=True,
        confidence=0.5,
        severity="info",
        reason=FAIL_OPEN_REASON,
        reasons=[FAIL_OPEN_REASON],
        patterns=[VALIDATION_ERROR],
    )


def submission_from_event(event: Event) -> ScoreSubmission:
    """Read the anti-cheat inputs from a ``game_ended`` payload."""
    payload = event.payload or {}
    survival = payload.get("survival_time_ms")
    if survival is None and payload.get("duration_seconds") is not None:
        survival = int(payload["duration_seconds"]) * 1000

    return ScoreSubmission(
        user_id=event.user_id,
        score=int(payload.get("score", 0)),
        survival_time_ms=survival,
        game_duration_ms=payload.get("game_duration_ms"),
        device_fingerprint=payload.get("device_fingerprint"),
        submitted_at=event.received_at,
        event_id=event.id,
    )


class AntiCheatEngine:
    """
    Validates score submissions and keeps the audit log.

    ``validate_event`` memoizes verdicts by event id so the global pass and
    every tournament pass reuse one decision (and one audit row) per event.
    """

    MEMO_SIZE = 10000

    def __init__(self, session_factory: sessionmaker, settings: Optional[Settings] = None,
                 clock: Clock = utcnow):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self._verdicts: "OrderedDict[int, ValidationResult]" = OrderedDict()
        self._lock = threading.Lock()

    def validate(self, submission: ScoreSubmission,
                 recent_history: Optional[List[HistoryEntry]] = None) -> ValidationResult:
        """
        Run every check and record the decision.

        Args:
            submission: The reported result
            recent_history: Earlier submissions, newest first. Loaded from the
                audit log when omitted.

        Returns:
            ValidationResult; never raises
        """
        now = submission.submitted_at or self.clock()
        try:
            if recent_history is None:
                recent_history = self._load_history(submission, now)
            outcomes = [check(submission, recent_history, now, self.settings) for check in CHECKS]
            result = decide(outcomes, self.settings.suspicious_pattern_threshold)
        except Exception as e:
            logger.error(f"Anti-cheat validation error for {submission.user_id}: {e}", exc_info=True)
            result = fail_open_result()

        self._record(submission, result, now)

        if not result.accepted:
            logger.warning(
                f"Score rejected for {submission.user_id}: score={submission.score} "
                f"reason={result.reason} patterns={result.patterns}"
            )
            record_custom_metric("Custom/AntiCheat/Rejected", 1)
            record_custom_event("AntiCheatRejection", {
                "user_id": submission.user_id,
                "score": submission.score,
                "severity": result.severity,
                "patterns": ",".join(result.patterns),
            })
        elif result.patterns:
            logger.info(f"Score accepted with warnings for {submission.user_id}: {result.patterns}")

        return result

    def validate_event(self, event: Event) -> ValidationResult:
        """Validate a log event, reusing an earlier verdict for the same event."""
        with self._lock:
            cached = self._verdicts.get(event.id)
        if cached is not None:
            return cached

        result = self.validate(submission_from_event(event))

        with self._lock:
            self._verdicts[event.id] = result
            while len(self._verdicts) > self.MEMO_SIZE:
                self._verdicts.popitem(last=False)
        return result

    def _load_history(self, submission: ScoreSubmission, now: datetime) -> List[HistoryEntry]:
        lookback = max(
            timedelta(days=self.settings.fingerprint_lookback_days),
            timedelta(seconds=self.settings.duplicate_window_seconds),
            timedelta(milliseconds=self.settings.rapid_submission_window_ms),
        )
        db = self.session_factory()
        try:
            query = db.query(AntiCheatLog).filter(
                AntiCheatLog.user_id == submission.user_id,
                AntiCheatLog.submitted_at >= now - lookback,
                AntiCheatLog.submitted_at <= now,
            )
            if submission.event_id is not None:
                query = query.filter(
                    (AntiCheatLog.event_id.is_(None)) | (AntiCheatLog.event_id != submission.event_id)
                )
            rows = query.order_by(AntiCheatLog.submitted_at.desc(), AntiCheatLog.id.desc()).all()
            return [
                HistoryEntry(
                    score=row.score or 0,
                    survival_time_ms=row.survival_time_ms,
                    device_fingerprint=row.device_fingerprint,
                    accepted=row.accepted,
                    submitted_at=row.submitted_at,
                )
                for row in rows
            ]
        finally:
            db.close()

    def _record(self, submission: ScoreSubmission, result: ValidationResult, submitted_at: datetime) -> None:
        db = None
        try:
            db = self.session_factory()
            db.add(AntiCheatLog(
                user_id=submission.user_id,
                event_id=submission.event_id,
                score=submission.score,
                survival_time_ms=submission.survival_time_ms,
                game_duration_ms=submission.game_duration_ms,
                device_fingerprint=submission.device_fingerprint,
                accepted=result.accepted,
                confidence=result.confidence,
                severity=result.severity,
                patterns=result.patterns,
                reason=result.reason,
                submitted_at=submitted_at,
                created_at=self.clock(),
            ))
            db.commit()
        except Exception as e:
            if db is not None:
                db.rollback()
            logger.error(f"Failed to write anti-cheat audit row for {submission.user_id}: {e}")
        finally:
            if db is not None:
                db.close()

    def get_player_cheat_history(self, user_id: str, days: int = 30) -> Dict:
        """Flagged decisions for one player over the last ``days`` days."""
        since = self.clock() - timedelta(days=days)
        db = self.session_factory()
        try:
            rows = db.query(AntiCheatLog).filter(
                AntiCheatLog.user_id == user_id,
                AntiCheatLog.created_at >= since,
                AntiCheatLog.severity != "info",
            ).order_by(AntiCheatLog.created_at.desc()).all()

            history = [
                {
                    "event_id": row.event_id,
                    "score": row.score,
                    "accepted": row.accepted,
                    "severity": row.severity,
                    "patterns": row.patterns,
                    "reason": row.reason,
                    "created_at": row.created_at,
                }
                for row in rows
            ]
            return {
                "user_id": user_id,
                "history": history,
                "total_violations": len(history),
                "critical_violations": sum(1 for h in history if h["severity"] == "critical"),
            }
        finally:
            db.close()

    def get_anti_cheat_stats(self, days: int = 7) -> Dict:
        """Validation volume, rejection rate and severity breakdown."""
        since = self.clock() - timedelta(days=days)
        db = self.session_factory()
        try:
            total, rejected = db.query(
                func.count(AntiCheatLog.id),
                func.coalesce(func.sum(case((AntiCheatLog.accepted.is_(False), 1), else_=0)), 0),
            ).filter(AntiCheatLog.created_at >= since).one()

            by_severity = db.query(
                AntiCheatLog.severity,
                func.count(AntiCheatLog.id),
                func.count(func.distinct(AntiCheatLog.user_id)),
            ).filter(
                AntiCheatLog.created_at >= since
            ).group_by(AntiCheatLog.severity).all()

            return {
                "period_days": days,
                "total_validations": int(total),
                "total_rejections": int(rejected),
                "rejection_rate": round(rejected / total * 100, 2) if total else 0.0,
                "severities": [
                    {"severity": severity, "count": count, "unique_players": players}
                    for severity, count, players in by_severity
                ],
            }
        finally:
            db.close()

"""
Leaderboard aggregator.

Folds ``game_ended`` events from the append-only log into ranked standings:

- Global pass: claims each event with a conditional update on
  ``events.processed_at`` and folds it into ``leaderboard_global``.
- Tournament pass: claims each event per tournament with a unique
  ``tournament_event_links`` row and folds it into the participant's standing.

Each event is its own unit of work, so one bad event only costs itself: the
unit is rolled back and the error is recorded on the row for a later retry.
"""
import logging
import time
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from arena.cache import GLOBAL_TOP_KEY, CacheManager, tournament_top_key
from arena.clock import Clock, utcnow
from arena.config import Settings, get_settings
from arena.models import (
    AntiCheatLog,
    CacheMetadata,
    Event,
    GlobalStanding,
    LinkStatus,
    TournamentEventLink,
    TournamentParticipant,
)
from arena.monitoring import monitor_transaction, record_custom_metric
from arena.schemas import AggregationResult, GlobalLeaderboardResponse, LeaderboardEntry
from arena.services.anti_cheat import AntiCheatEngine
from arena.services.standings import (
    global_entry,
    global_rank,
    global_standings,
    tournament_rank,
    tournament_standings,
    write_snapshot,
)

logger = logging.getLogger(__name__)

GAME_ENDED = "game_ended"
MAX_ERROR_LENGTH = 1000


def _score(event: Event) -> int:
    return int((event.payload or {}).get("score", 0))


def _duration_seconds(event: Event) -> int:
    return int((event.payload or {}).get("duration_seconds") or 0)


def _nickname(event: Event) -> Optional[str]:
    return (event.payload or {}).get("nickname")


class LeaderboardAggregator:
    """
    Incremental projection of the event log into global and tournament standings.

    Args:
        session_factory: Produces one session per pass
        cache: Redis cache for the top-N pages
        anti_cheat: Optional engine; without it every event is accepted
        settings: Batch sizes, attempt limits and cache TTLs
        clock: Source of ``now`` for watermarks
    """

    def __init__(self, session_factory: sessionmaker, cache: CacheManager,
                 anti_cheat: Optional[AntiCheatEngine] = None,
                 settings: Optional[Settings] = None, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.cache = cache
        self.anti_cheat = anti_cheat
        self.settings = settings or get_settings()
        self.clock = clock
        self.stats = {
            "global_updates": 0,
            "tournament_updates": 0,
            "events_processed": 0,
            "events_rejected": 0,
            "errors": 0,
            "last_global_update": None,
            "last_tournament_update": None,
        }

    def _qualifying(self, query):
        return query.filter(
            Event.event_type == GAME_ENDED,
            Event.payload["game_mode"].as_string() == self.settings.qualifying_game_mode,
        )

    # ========================================================================
    # Global pass
    # ========================================================================

    @monitor_transaction("global_aggregation")
    def update_global_leaderboard(self) -> AggregationResult:
        """
        Fold the next batch of unprocessed qualifying events into the global
        leaderboard and refresh its cache.

        Returns:
            AggregationResult with per-outcome counters
        """
        started = time.monotonic()
        result = AggregationResult(scope="global")
        db = self.session_factory()
        try:
            events = self._qualifying(db.query(Event)).filter(
                Event.processed_at.is_(None),
                Event.processing_attempts < self.settings.max_processing_attempts,
            ).order_by(Event.received_at, Event.id).limit(self.settings.aggregation_batch_size).all()

            if not events:
                logger.info("No new game_ended events to process")
            else:
                logger.info(f"Processing {len(events)} game_ended events for global leaderboard")

            for event in events:
                self._process_global_event(db, event, result)
        except Exception as e:
            db.rollback()
            logger.error(f"Global leaderboard update failed: {e}", exc_info=True)
            result.success = False
            result.error = str(e)
        finally:
            db.close()

        if result.success:
            self.refresh_global_cache()

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.stats["global_updates"] += 1
        self.stats["last_global_update"] = self.clock()
        self._count(result)

        logger.info(
            f"Global leaderboard updated: processed={result.processed}, rejected={result.rejected}, "
            f"errors={result.errors}, skipped={result.skipped}, duration_ms={result.duration_ms}"
        )
        return result

    def _process_global_event(self, db: Session, event: Event, result: AggregationResult) -> None:
        event_id = event.id
        try:
            verdict = self.anti_cheat.validate_event(event) if self.anti_cheat else None

            now = self.clock()
            claimed = db.query(Event).filter(
                Event.id == event_id,
                Event.processed_at.is_(None),
            ).update(
                {
                    Event.processed_at: now,
                    Event.processing_attempts: Event.processing_attempts + 1,
                },
                synchronize_session=False,
            )
            if not claimed:
                db.rollback()
                logger.debug(f"Event {event_id} already claimed, skipping")
                result.skipped += 1
                return

            if verdict is None or verdict.accepted:
                self._fold_global(db, event, now)
                result.processed += 1
            else:
                result.rejected += 1

            db.commit()
        except Exception as e:
            db.rollback()
            result.errors += 1
            logger.error(f"Error processing event {event_id} for global leaderboard: {e}")
            self._record_event_error(db, event_id, e)

    def _fold_global(self, db: Session, event: Event, now: datetime) -> None:
        score = _score(event)
        standing = db.query(GlobalStanding).filter(
            GlobalStanding.user_id == event.user_id
        ).with_for_update().first()

        if standing is None:
            db.add(GlobalStanding(
                user_id=event.user_id,
                nickname=_nickname(event),
                high_score=score,
                high_score_at=event.received_at,
                total_games=1,
                total_playtime_seconds=_duration_seconds(event),
                last_played_at=now,
                updated_at=now,
            ))
            db.flush()
            return

        if score > standing.high_score:
            standing.high_score = score
            standing.high_score_at = event.received_at
        if _nickname(event):
            standing.nickname = _nickname(event)
        standing.total_games += 1
        standing.total_playtime_seconds += _duration_seconds(event)
        standing.last_played_at = now
        standing.updated_at = now

    def _record_event_error(self, db: Session, event_id: int, error: Exception) -> None:
        try:
            db.query(Event).filter(Event.id == event_id).update(
                {
                    Event.processing_attempts: Event.processing_attempts + 1,
                    Event.processing_error: str(error)[:MAX_ERROR_LENGTH],
                },
                synchronize_session=False,
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record processing error for event {event_id}: {e}")

    def refresh_global_cache(self) -> int:
        """Write the global top N to Redis and upsert its cache metadata."""
        db = self.session_factory()
        try:
            entries = global_standings(db, self.settings.global_cache_size)
            self.cache.set(
                GLOBAL_TOP_KEY,
                [entry.model_dump(mode="json") for entry in entries],
                self.settings.cache_ttl_global,
            )
            total = db.query(GlobalStanding).count()
            self._touch_metadata(db, GLOBAL_TOP_KEY, total)
            db.commit()
            logger.debug(f"Leaderboard cache updated: {len(entries)} entries")
            return len(entries)
        except Exception as e:
            db.rollback()
            logger.error(f"Error updating leaderboard cache: {e}")
            return 0
        finally:
            db.close()

    def _touch_metadata(self, db: Session, cache_key: str, entry_count: int) -> None:
        meta = db.get(CacheMetadata, cache_key)
        if meta is None:
            db.add(CacheMetadata(cache_key=cache_key, last_updated_at=self.clock(), entry_count=entry_count))
        else:
            meta.last_updated_at = self.clock()
            meta.entry_count = entry_count

    # ========================================================================
    # Tournament pass
    # ========================================================================

    @monitor_transaction("tournament_aggregation")
    def update_tournament_leaderboard(self, tournament_id: str, start_date: datetime,
                                      end_date: datetime) -> AggregationResult:
        """
        Fold qualifying events received inside ``[start_date, end_date]`` into
        one tournament's standings.

        Consumption is tracked per tournament, independently of the global
        watermark.
        """
        started = time.monotonic()
        result = AggregationResult(scope=f"tournament:{tournament_id}")
        db = self.session_factory()
        try:
            handled = db.query(TournamentEventLink.event_id).filter(
                TournamentEventLink.tournament_id == tournament_id,
                or_(
                    TournamentEventLink.status != LinkStatus.FAILED.value,
                    TournamentEventLink.attempts >= self.settings.max_processing_attempts,
                ),
            )
            events = self._qualifying(db.query(Event)).filter(
                Event.received_at >= start_date,
                Event.received_at <= end_date,
                ~Event.id.in_(handled),
            ).order_by(Event.received_at, Event.id).limit(self.settings.aggregation_batch_size).all()

            if events:
                logger.info(f"Processing {len(events)} events for tournament {tournament_id}")

            for event in events:
                self._process_tournament_event(db, tournament_id, event, result)
        except Exception as e:
            db.rollback()
            logger.error(f"Tournament leaderboard update failed for {tournament_id}: {e}", exc_info=True)
            result.success = False
            result.error = str(e)
        finally:
            db.close()

        if result.processed:
            self.refresh_tournament_cache(tournament_id)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.stats["tournament_updates"] += 1
        self.stats["last_tournament_update"] = self.clock()
        self._count(result)

        logger.info(
            f"Tournament leaderboard updated: tournament={tournament_id}, processed={result.processed}, "
            f"rejected={result.rejected}, errors={result.errors}, skipped={result.skipped}"
        )
        return result

    def _process_tournament_event(self, db: Session, tournament_id: str, event: Event,
                                  result: AggregationResult) -> None:
        event_id = event.id
        try:
            verdict = self.anti_cheat.validate_event(event) if self.anti_cheat else None
            accepted = verdict is None or verdict.accepted
            status = LinkStatus.PROCESSED if accepted else LinkStatus.REJECTED
            now = self.clock()

            if not self._claim_for_tournament(db, tournament_id, event_id, status, now):
                db.rollback()
                result.skipped += 1
                return

            if accepted:
                self._fold_tournament(db, tournament_id, event, now)
                result.processed += 1
            else:
                result.rejected += 1

            db.commit()
        except Exception as e:
            db.rollback()
            result.errors += 1
            logger.error(f"Error processing event {event_id} for tournament {tournament_id}: {e}")
            self._record_link_failure(db, tournament_id, event_id, e)

    def _claim_for_tournament(self, db: Session, tournament_id: str, event_id: int,
                              status: LinkStatus, now: datetime) -> bool:
        """
        Claim an event for one tournament inside the current transaction.

        A fresh event gets a link row; the unique key makes a concurrent claim
        fail. A previously failed link is taken over with a conditional update.
        """
        link = db.query(TournamentEventLink).filter(
            TournamentEventLink.tournament_id == tournament_id,
            TournamentEventLink.event_id == event_id,
        ).first()

        if link is None:
            try:
                db.add(TournamentEventLink(
                    tournament_id=tournament_id,
                    event_id=event_id,
                    status=status.value,
                    attempts=1,
                    processed_at=now,
                ))
                db.flush()
                return True
            except IntegrityError:
                logger.debug(f"Event {event_id} already claimed for tournament {tournament_id}")
                return False

        if link.status != LinkStatus.FAILED.value:
            return False

        claimed = db.query(TournamentEventLink).filter(
            TournamentEventLink.id == link.id,
            TournamentEventLink.status == LinkStatus.FAILED.value,
        ).update(
            {
                TournamentEventLink.status: status.value,
                TournamentEventLink.attempts: TournamentEventLink.attempts + 1,
                TournamentEventLink.error: None,
                TournamentEventLink.processed_at: now,
            },
            synchronize_session=False,
        )
        return bool(claimed)

    def _fold_tournament(self, db: Session, tournament_id: str, event: Event, now: datetime) -> None:
        score = _score(event)
        participant = db.query(TournamentParticipant).filter(
            TournamentParticipant.tournament_id == tournament_id,
            TournamentParticipant.user_id == event.user_id,
        ).with_for_update().first()

        if participant is None:
            participant = TournamentParticipant(
                tournament_id=tournament_id,
                user_id=event.user_id,
                player_name=_nickname(event) or event.user_id,
                registered_at=now,
                best_score=score,
                best_score_at=event.received_at,
                total_games=1,
            )
            db.add(participant)
            improved = True
        else:
            improved = score > participant.best_score
            if improved:
                participant.best_score = score
                participant.best_score_at = event.received_at
            participant.total_games += 1

        db.flush()
        if improved:
            write_snapshot(db, participant, tournament_rank(db, participant), now)

    def _record_link_failure(self, db: Session, tournament_id: str, event_id: int, error: Exception) -> None:
        message = str(error)[:MAX_ERROR_LENGTH]
        try:
            link = db.query(TournamentEventLink).filter(
                TournamentEventLink.tournament_id == tournament_id,
                TournamentEventLink.event_id == event_id,
            ).first()
            if link is None:
                db.add(TournamentEventLink(
                    tournament_id=tournament_id,
                    event_id=event_id,
                    status=LinkStatus.FAILED.value,
                    attempts=1,
                    error=message,
                ))
            elif link.status == LinkStatus.FAILED.value:
                link.attempts += 1
                link.error = message
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record tournament failure for event {event_id}: {e}")

    def refresh_tournament_cache(self, tournament_id: str) -> int:
        db = self.session_factory()
        try:
            size = self.settings.tournament_cache_size
            entries = tournament_standings(db, tournament_id, limit=size)
            key = tournament_top_key(tournament_id, size)
            self.cache.set(key, [entry.model_dump(mode="json") for entry in entries],
                           self.settings.cache_ttl_tournament)
            self._touch_metadata(db, key, len(entries))
            db.commit()
            return len(entries)
        except Exception as e:
            db.rollback()
            logger.error(f"Error updating tournament cache for {tournament_id}: {e}")
            return 0
        finally:
            db.close()

    # ========================================================================
    # Rebuild and reads
    # ========================================================================

    def rebuild_global_leaderboard(self) -> AggregationResult:
        """
        Recompute ``leaderboard_global`` from every consumed qualifying event.

        Events the anti-cheat engine rejected are left out. Unconsumed events
        are left to the next global pass so nothing is counted twice.
        """
        started = time.monotonic()
        result = AggregationResult(scope="global_rebuild")
        db = self.session_factory()
        try:
            logger.warning("Rebuilding global leaderboard from scratch")
            nicknames = dict(db.query(GlobalStanding.user_id, GlobalStanding.nickname).all())

            rejected_events = db.query(AntiCheatLog.event_id).filter(
                AntiCheatLog.event_id.isnot(None),
                AntiCheatLog.accepted.is_(False),
            )
            events = self._qualifying(db.query(Event)).filter(
                Event.processed_at.isnot(None),
                ~Event.id.in_(rejected_events),
            ).order_by(Event.received_at, Event.id).yield_per(self.settings.aggregation_batch_size)

            now = self.clock()
            rebuilt: Dict[str, GlobalStanding] = {}
            for event in events:
                score = _score(event)
                standing = rebuilt.get(event.user_id)
                if standing is None:
                    rebuilt[event.user_id] = GlobalStanding(
                        user_id=event.user_id,
                        nickname=_nickname(event) or nicknames.get(event.user_id),
                        high_score=score,
                        high_score_at=event.received_at,
                        total_games=1,
                        total_playtime_seconds=_duration_seconds(event),
                        last_played_at=event.processed_at,
                        updated_at=now,
                    )
                    continue
                # Events arrive in received order, so only a strict improvement moves the timestamp
                if score > standing.high_score:
                    standing.high_score = score
                    standing.high_score_at = event.received_at
                if _nickname(event):
                    standing.nickname = _nickname(event)
                standing.total_games += 1
                standing.total_playtime_seconds += _duration_seconds(event)
                standing.last_played_at = max(standing.last_played_at, event.processed_at)

            db.query(GlobalStanding).delete(synchronize_session=False)
            db.add_all(rebuilt.values())
            db.commit()
            result.processed = len(rebuilt)
        except Exception as e:
            db.rollback()
            logger.error(f"Global leaderboard rebuild failed: {e}", exc_info=True)
            result.success = False
            result.error = str(e)
        finally:
            db.close()

        if result.success:
            self.refresh_global_cache()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Global leaderboard rebuilt: players={result.processed}, duration_ms={result.duration_ms}")
        return result

    def get_global_leaderboard(self, limit: int = 15, offset: int = 0,
                               user_id: Optional[str] = None) -> GlobalLeaderboardResponse:
        """
        Ranked page of the global leaderboard.

        Pages inside the cached top N are served from Redis; everything else
        and the requesting player's own position come from the database.
        """
        entries = None
        if offset + limit <= self.settings.global_cache_size:
            cached = self.cache.get(GLOBAL_TOP_KEY)
            if cached is not None:
                logger.debug("Cache hit for global leaderboard")
                entries = [LeaderboardEntry(**item) for item in cached[offset:offset + limit]]

        db = self.session_factory()
        try:
            if entries is None:
                entries = global_standings(db, limit, offset)

            user_position = None
            if user_id:
                standing = db.get(GlobalStanding, user_id)
                if standing is not None:
                    user_position = global_entry(global_rank(db, standing), standing)

            return GlobalLeaderboardResponse(
                leaderboard=entries,
                user_position=user_position,
                total_players=db.query(GlobalStanding).count(),
                timestamp=self.clock(),
            )
        finally:
            db.close()

    def get_stats(self) -> Dict:
        db = self.session_factory()
        try:
            caches = {
                meta.cache_key: {"last_updated_at": meta.last_updated_at, "entry_count": meta.entry_count}
                for meta in db.query(CacheMetadata).all()
            }
        finally:
            db.close()
        return dict(self.stats, caches=caches)

    def clear_all_caches(self) -> int:
        deleted = self.cache.delete_pattern("leaderboard:*") + self.cache.delete_pattern("tournament:*")
        logger.info(f"Cleared {deleted} leaderboard cache keys")
        return deleted

    def _count(self, result: AggregationResult) -> None:
        self.stats["events_processed"] += result.processed
        self.stats["events_rejected"] += result.rejected
        self.stats["errors"] += result.errors
        record_custom_metric(f"Custom/Aggregator/{result.scope.split(':')[0]}/Processed", result.processed)
        record_custom_metric(f"Custom/Aggregator/{result.scope.split(':')[0]}/Rejected", result.rejected)

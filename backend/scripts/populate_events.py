"""
Script to seed the event log with synthetic game_ended events.

Player activity follows a Zipf distribution (a few players play a lot), and
scores are drawn so that most results pass anti-cheat while a small share trip
the score-to-time ratio check. Events are inserted unprocessed; the aggregator
jobs pick them up.
"""
import sys
import os
import time
from datetime import timedelta
import random

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faker import Faker
import numpy as np

from arena.clock import utcnow
from arena.config import get_settings
from arena.database import get_session_factory, init_db
from arena.models import Event

fake = Faker()
settings = get_settings()
SessionLocal = get_session_factory()

GAME_MODES = ["endless", "endless", "endless", "classic", "daily"]


def generate_players(total_players=10_000):
    """Generate (user_id, nickname, device fingerprint) triples."""
    print(f"\nGenerating {total_players:,} players...")
    return [
        (f"device-{fake.uuid4()}", fake.user_name()[:30], fake.sha1()[:32])
        for _ in range(total_players)
    ]


def generate_events(session, players, total_events=200_000, batch_size=5_000, days=14, cheat_rate=0.01):
    """Insert game_ended events spread over the last ``days`` days."""
    print(f"\nGenerating {total_events:,} game_ended events...")
    start_time = time.time()
    now = utcnow()

    # Exponent for Zipf distribution
    zipf_param = 1.3

    for batch_start in range(0, total_events, batch_size):
        batch_end = min(batch_start + batch_size, total_events)

        events = []
        for _ in range(batch_end - batch_start):
            zipf_index = int(np.random.zipf(zipf_param)) - 1
            user_id, nickname, fingerprint = players[min(zipf_index, len(players) - 1)]

            survival_seconds = max(5, int(np.random.gamma(2.0, 45.0)))
            if random.random() < cheat_rate:
                score = survival_seconds * random.randint(20, 80)
            else:
                score = int(survival_seconds * random.uniform(1.0, 9.0))

            received_at = now - timedelta(seconds=random.randint(0, days * 86400))
            events.append(Event(
                event_type="game_ended",
                user_id=user_id,
                payload={
                    "game_mode": random.choice(GAME_MODES),
                    "score": score,
                    "duration_seconds": survival_seconds,
                    "survival_time_ms": survival_seconds * 1000,
                    "game_duration_ms": survival_seconds * 1000 + random.randint(0, 3000),
                    "nickname": nickname,
                    "device_fingerprint": fingerprint,
                },
                received_at=received_at,
                processing_attempts=0,
            ))

        session.add_all(events)
        session.commit()

        # Progress update
        elapsed = time.time() - start_time
        progress = (batch_end / total_events) * 100
        rate = batch_end / elapsed if elapsed > 0 else 0
        print(f"Progress: {progress:.1f}% ({batch_end:,}/{total_events:,}) - {rate:.0f} events/sec")

    total_time = time.time() - start_time
    print(f"\n✓ Created {total_events:,} events in {total_time:.2f} seconds")


def print_statistics(session):
    """Print event log statistics."""
    print("\n" + "=" * 60)
    print("EVENT LOG STATISTICS")
    print("=" * 60)

    total = session.query(Event).count()
    pending = session.query(Event).filter(Event.processed_at.is_(None)).count()
    print(f"Total Events: {total:,}")
    print(f"Unprocessed Events: {pending:,}")
    print("=" * 60)


def main():
    """Main execution function."""
    print("=" * 60)
    print("ARENA EVENT POPULATION SCRIPT")
    print("=" * 60)
    print(f"Database: {settings.database_url}")
    print("=" * 60)

    overall_start = time.time()

    init_db()
    session = SessionLocal()

    try:
        players = generate_players(total_players=10_000)
        generate_events(session, players, total_events=200_000, batch_size=5_000)
        print_statistics(session)

        overall_time = time.time() - overall_start
        print(f"\n✓ Total execution time: {overall_time / 60:.2f} minutes")
        print("✓ Event population completed successfully!")

    except Exception as e:
        print(f"\n✗ Error during event population: {e}")
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()

"""
Script to rebuild the global leaderboard from the consumed event log.

Manual operation: deletes every global standing and recomputes it. Use after
fixing a projection bug or restoring the standings table.
"""
import sys
import os

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from arena.bootstrap import build_services
from arena.config import get_settings
from arena.database import init_db

settings = get_settings()


def main():
    """Main execution function."""
    print("=" * 60)
    print("ARENA GLOBAL LEADERBOARD REBUILD")
    print("=" * 60)
    print(f"Database: {settings.database_url}")
    print("=" * 60)

    init_db()
    services = build_services()
    result = services.aggregator.rebuild_global_leaderboard()

    if not result.success:
        print(f"\n✗ Rebuild failed: {result.error}")
        sys.exit(1)

    print(f"\n✓ Rebuilt {result.processed:,} standings in {result.duration_ms / 1000:.2f} seconds")

    top = services.aggregator.get_global_leaderboard(limit=5)
    print("\nTop 5 Players:")
    for entry in top.leaderboard:
        print(f"  {entry.rank}. {entry.player_name or entry.user_id}: {entry.score:,} points ({entry.total_games} games)")


if __name__ == "__main__":
    main()

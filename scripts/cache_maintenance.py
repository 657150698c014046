"""Inspect, garbage-collect or clear the local chat session cache.

Usage:
    python -m scripts.cache_maintenance
    python -m scripts.cache_maintenance --force
    python -m scripts.cache_maintenance --clear
"""

import argparse
import asyncio

from livechat.core.config import settings
from livechat.core.redis import close_redis, init_redis
from livechat.repositories.session_cache import SessionCache


async def run_maintenance(force: bool, clear: bool) -> None:
    """Run cache garbage collection, or clear the cache, and print a summary."""
    client = await init_redis(settings.redis)
    try:
        cache = SessionCache(client, settings.cache, owner="AGENT")
        if clear:
            await cache.clear_all()
            print(f"Cleared chat cache under prefix '{settings.cache.key_prefix}'.")
            return

        ran = await cache.maybe_cleanup(force=force)
        if ran:
            print("Garbage collection completed.")
        else:
            print("Garbage collection skipped (ran within the cleanup interval).")

        counts = await cache.get_counts()
        retention = cache.get_retention_info()
        print(
            "Sessions: {all} total, {waiting} waiting, {active} active, "
            "{closed} closed".format(**counts)
        )
        print(
            "Retention: {retention_minutes} min, cleanup every "
            "{cleanup_interval_minutes} min".format(**retention)
        )
    finally:
        await close_redis(client)


def main() -> None:
    parser = argparse.ArgumentParser(description="Maintain the chat session cache")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run garbage collection even if it ran recently",
    )
    parser.add_argument(
        "--clear", action="store_true", help="Delete every cached session"
    )
    args = parser.parse_args()

    asyncio.run(run_maintenance(args.force, args.clear))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Drop cached generated copy so it is regenerated on the next match.

Usage:
  RULE_ID=42 python -m scripts.clear_copy_cache                   # one rule
  RULE_ID=42 LISTING=B0CHX1W1XY python -m scripts.clear_copy_cache # one rule + listing
  python -m scripts.clear_copy_cache                               # everything

Requires Redis (REDIS_URL).
"""

import asyncio
import os
import sys

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dealcast.services.copywriter import CopyGenerator  # noqa: E402
from dealcast.stores.copy_store import RedisCopyStore  # noqa: E402
from dealcast.stores.redis import close_redis, init_redis  # noqa: E402


async def main() -> None:
    raw_rule = os.getenv("RULE_ID", "").strip()
    rule_id = int(raw_rule) if raw_rule else None
    listing = os.getenv("LISTING", "").strip() or None

    await init_redis()
    try:
        generator = CopyGenerator(store=RedisCopyStore(), provider=None)
        deleted = await generator.invalidate(rule_id, listing)
        print({"ok": True, "rule_id": rule_id if rule_id is not None else "*", "listing": listing or "*", "deleted": deleted})
    finally:
        await close_redis()


if __name__ == "__main__":
    asyncio.run(main())

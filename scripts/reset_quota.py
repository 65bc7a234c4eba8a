#!/usr/bin/env python3
"""Reset generated-copy quota counters.

Usage:
  RULE_ID=42 python -m scripts.reset_quota            # today's counter of rule 42
  RULE_ID=42 ALL_DAYS=1 python -m scripts.reset_quota # every stored day of rule 42
  python -m scripts.reset_quota                        # today's counters of all rules

Requires Redis (REDIS_URL); counters live there.
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
    all_days = os.getenv("ALL_DAYS", "").strip() == "1"

    await init_redis()
    try:
        generator = CopyGenerator(store=RedisCopyStore(), provider=None)
        deleted = await generator.reset_quota(rule_id, all_days=all_days)
        print({"ok": True, "rule_id": rule_id if rule_id is not None else "*", "all_days": all_days, "deleted": deleted})
    finally:
        await close_redis()


if __name__ == "__main__":
    asyncio.run(main())

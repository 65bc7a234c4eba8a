#!/usr/bin/env python3
"""Deal pipeline job (cron or long-running worker).

Behavior:
- Poll the Keepa deals feed (all pages first, then one write transaction)
- Score and upsert listings
- Match active rules, generate copy (template / cached / model) and publish

Run once (Railway Cron):
  python -m scripts.run_pipeline

Run forever, one cycle every POLL_INTERVAL_MINUTES:
  PIPELINE_LOOP=1 python -m scripts.run_pipeline

A failed poll (source down) is logged and retried on the next tick. In loop mode
any other cycle failure (e.g. a database blip) is logged the same way.
"""

import asyncio
import logging
import os
import sys

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dealcast.services.ingestion import SourceUnavailableError  # noqa: E402
from dealcast.services.pipeline import DealPipeline, run_cycle  # noqa: E402
from dealcast.settings import get_settings  # noqa: E402
from dealcast.stores.postgres import close_db, init_db, ping_db  # noqa: E402
from dealcast.stores.redis import close_redis, init_redis  # noqa: E402

logger = logging.getLogger("uvicorn.error")


async def _run_once(pipeline: DealPipeline, keep_going: bool = False) -> dict:
    """One cycle. With keep_going, any failure is logged and reported instead of raised."""
    try:
        report = await run_cycle(pipeline=pipeline)
    except SourceUnavailableError as e:
        logger.error(f"Poll aborted, will retry next tick: {e}")
        return {"ok": False, "error": str(e)}
    except Exception as e:
        if not keep_going:
            raise
        logger.exception("Pipeline cycle failed, will retry next tick")
        return {"ok": False, "error": f"{type(e).__name__}: {e}"}
    return {"ok": True, **report.to_dict()}


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = get_settings()

    # Initialize shared connections (same as API lifespan, but for a job run)
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception:
        # Still runs without Redis, but quotas and cache are per-process.
        logger.exception("Redis init failed")

    loop_forever = os.getenv("PIPELINE_LOOP", "").strip() == "1" or "--loop" in sys.argv[1:]
    try:
        pipeline = DealPipeline()
        while True:
            # Final output for Railway logs (single JSON-ish blob)
            print(await _run_once(pipeline, keep_going=loop_forever))
            if not loop_forever:
                break
            await asyncio.sleep(settings.poll_interval_minutes * 60)
    finally:
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())

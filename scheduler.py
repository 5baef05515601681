# scheduler.py
"""
External trigger for the auction tick: POSTs TICK_URL every
TICK_INTERVAL_SECONDS with a bearer token. Round state lives in the
database, so this loop holds none and can be run on any host (or replaced
by cron).
"""

import asyncio
import logging
from typing import Optional

import httpx

from config import settings

log = logging.getLogger("nebula.scheduler")


async def trigger_tick(client: httpx.AsyncClient, url: Optional[str] = None, token: Optional[str] = None) -> dict:
    """One POST to the tick endpoint; returns {status_code, body}."""
    url = url or settings.TICK_URL
    if token is None:
        tokens = settings.tick_tokens
        token = tokens[0] if tokens else ""
    r = await client.post(url, headers={"Authorization": f"Bearer {token}"})
    try:
        body = r.json()
    except ValueError:
        body = {"raw": r.text}
    return {"status_code": r.status_code, "body": body}


async def tick_loop(interval: Optional[int] = None, iterations: Optional[int] = None):
    interval = settings.TICK_INTERVAL_SECONDS if interval is None else interval
    done = 0
    async with httpx.AsyncClient(timeout=30.0) as client:
        while iterations is None or done < iterations:
            try:
                result = await trigger_tick(client)
                code = result["status_code"]
                if code == 429:
                    log.info("[TICK] skipped; another tick is running")
                elif code >= 400:
                    log.warning("[TICK] %s %s", code, result["body"])
                else:
                    body = result["body"]
                    log.info(
                        "[TICK] %s transitioned=%s finalized=%s started=%s",
                        body.get("status"), body.get("transitioned"), body.get("finalized"), body.get("started"),
                    )
            except httpx.HTTPError as e:
                log.error("[TICK] request error %s", e)
            done += 1
            if iterations is None or done < iterations:
                await asyncio.sleep(max(0, interval))


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(tick_loop())

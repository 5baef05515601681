"""
NEBULA: init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Opens an auction round if none is active
"""

import os
import asyncio
import logging

import auctions
import db as dbmod
from config import settings  # keeps DB path consistent with app

log = logging.getLogger("nebula.init_db")


# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


# =========================================================
# Main
# =========================================================
async def main(db_path: str = DB_PATH):
    log.info("[init_db] using DB_PATH=%s", db_path)
    conn = await dbmod.connect(db_path, apply_schema=True)
    try:
        rid = await auctions.start_auction_round(conn)
        if rid is None:
            active = await auctions.get_active_round(conn)
            log.info("[init_db] active round exists: %s", active["id"] if active else None)
        else:
            log.info("[init_db] initialized round: %s", rid)
        return rid
    finally:
        await conn.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(main())

"""Delete expired verification codes, closed login attempts and dead session tokens.

Meant for cron:

    python -m authgate.cli.purge_expired

Exits 1 when the purge fails so the scheduler can alert.
"""

import asyncio
import logging
import sys
import time

from authgate.config import settings
from authgate.logging_config import setup_logging
from authgate.services.maintenance import purge_expired
from authgate.utils.db_async import SessionLocal, dispose_engine

logger = logging.getLogger("authgate.cli.purge_expired")


async def run() -> int:
    started = time.monotonic()
    try:
        async with SessionLocal() as db:
            result = await purge_expired(db)
    except Exception:
        logger.exception("Purge failed after %.1fs", time.monotonic() - started)
        return 1
    finally:
        await dispose_engine()

    logger.info(
        "Purged %d codes, %d login attempts, %d tokens in %.1fs",
        result.verification_codes,
        result.login_attempts,
        result.session_tokens,
        time.monotonic() - started,
    )
    return 0


def main() -> None:
    setup_logging(level=settings.log_level, access_log=False, audit_level=settings.audit_log_level)
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()

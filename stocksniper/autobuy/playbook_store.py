"""Versioned, retailer-scoped playbook persistence."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksniper.autobuy.actions import dump_steps, parse_steps
from stocksniper.config import settings
from stocksniper.db.models import Playbook

logger = logging.getLogger(__name__)


class PlaybookStore:
    """
    One active playbook per retailer.

    Saving deactivates every earlier version and inserts ``max(version) + 1``.
    A playbook is deactivated after ``playbook_max_consecutive_failures``
    failed replays in a row; any success resets the streak.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from stocksniper.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    async def get_active(self, retailer: str) -> Optional[Playbook]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Playbook)
                .where(Playbook.retailer == retailer, Playbook.active.is_(True))
                .order_by(Playbook.version.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def save(self, retailer: str, steps: list, max_attempts: int = 3) -> Playbook:
        """Store a new active version for ``retailer``."""
        stored_steps = dump_steps(parse_steps(dump_steps(steps)))

        for attempt in range(1, max_attempts + 1):
            async with self._session_factory() as db:
                try:
                    await db.execute(
                        update(Playbook)
                        .where(Playbook.retailer == retailer, Playbook.active.is_(True))
                        .values(active=False)
                    )
                    current = await db.scalar(
                        select(func.max(Playbook.version)).where(Playbook.retailer == retailer)
                    )
                    playbook = Playbook(
                        retailer=retailer,
                        version=(current or 0) + 1,
                        steps=stored_steps,
                        success_count=1,
                        fail_count=0,
                        consecutive_failures=0,
                        active=True,
                        recorded_at=datetime.utcnow(),
                    )
                    db.add(playbook)
                    await db.commit()
                    await db.refresh(playbook)
                except IntegrityError:
                    # Another saver took the same version number
                    await db.rollback()
                    logger.warning(f"Playbook version race for {retailer} (attempt {attempt})")
                    continue

            logger.info(f"Saved playbook v{playbook.version} for {retailer} with {len(stored_steps)} steps")
            return playbook

        raise RuntimeError(f"Could not save playbook for {retailer} after {max_attempts} attempts")

    async def record_success(self, playbook_id: int) -> None:
        async with self._session_factory() as db:
            playbook = await db.get(Playbook, playbook_id)
            if playbook is None:
                return
            playbook.success_count += 1
            playbook.consecutive_failures = 0
            playbook.last_used_at = datetime.utcnow()
            await db.commit()

    async def record_failure(self, playbook_id: int) -> bool:
        """
        Count a failed replay.

        Returns:
            True if this failure deactivated the playbook
        """
        async with self._session_factory() as db:
            playbook = await db.get(Playbook, playbook_id)
            if playbook is None:
                return False
            now = datetime.utcnow()
            playbook.fail_count += 1
            playbook.consecutive_failures += 1
            playbook.last_used_at = now
            playbook.last_failed_at = now

            deactivated = False
            if playbook.active and playbook.consecutive_failures >= settings.playbook_max_consecutive_failures:
                playbook.active = False
                deactivated = True
            await db.commit()

        if deactivated:
            logger.warning(
                f"Deactivated playbook {playbook_id} ({playbook.retailer} v{playbook.version}) "
                f"after {playbook.consecutive_failures} consecutive failures"
            )
        return deactivated

"""Advisory abuse detection over recent ledger activity."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import assume_ledger_writer
from src.core.settings import Settings, get_settings
from src.models.base import as_utc, utcnow
from src.models.credit import CreditAbuseEvent, CreditTransaction
from src.services.events import EventPublisher, EventType

logger = logging.getLogger(__name__)

TENANT_BURST = "tenant_burst"
ACTION_BURST = "action_burst"


@dataclass
class AbuseSignal:
    """A threshold breach observed for one tenant."""
    tenant_id: uuid.UUID
    rule: str
    observed_count: int
    threshold: int
    window_seconds: int
    action_type: Optional[str] = None


class AbuseDetector:
    """
    Flags tenants whose transaction rate exceeds configured thresholds.

    Signals are recorded and published but never block or reverse the ledger
    operation that triggered the check. At most one signal per rule is
    recorded per window.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        settings: Optional[Settings] = None,
        event_publisher: Optional[EventPublisher] = None,
    ):
        self.db = db_session
        self.settings = settings or get_settings()
        self.events = event_publisher

    async def check(
        self,
        tenant_id: uuid.UUID,
        action_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[AbuseSignal]:
        """Evaluate both burst rules for ``tenant_id``; failures are logged, never raised."""
        now = as_utc(now) or utcnow()
        try:
            await assume_ledger_writer(self.db)
            signals = await self._evaluate(tenant_id, action_key, now)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Abuse check for tenant {tenant_id} failed: {e}")
            return []

        for signal in signals:
            logger.warning(
                f"Possible credit abuse by tenant {tenant_id}: {signal.rule} "
                f"{signal.observed_count} transactions in {signal.window_seconds}s "
                f"(threshold {signal.threshold})"
            )
            if self.events:
                await self.events.publish(
                    EventType.ABUSE_SUSPECTED,
                    tenant_id=tenant_id,
                    resource_id=tenant_id,
                    resource_type="tenant",
                    data={
                        "rule": signal.rule,
                        "action_type": signal.action_type,
                        "observed_count": signal.observed_count,
                        "threshold": signal.threshold,
                        "window_seconds": signal.window_seconds,
                    },
                )
        return signals

    async def list_events(self, tenant_id: uuid.UUID, limit: int = 50) -> List[CreditAbuseEvent]:
        query = (
            select(CreditAbuseEvent)
            .where(CreditAbuseEvent.tenant_id == tenant_id)
            .order_by(CreditAbuseEvent.created_at.desc())
            .limit(limit)
        )
        return list((await self.db.execute(query)).scalars().all())

    async def _evaluate(
        self,
        tenant_id: uuid.UUID,
        action_key: Optional[str],
        now: datetime,
    ) -> List[AbuseSignal]:
        signals = []

        window = timedelta(minutes=self.settings.abuse_window_minutes)
        observed = await self._count(tenant_id, now - window)
        if observed > self.settings.abuse_max_transactions:
            signals.append(AbuseSignal(
                tenant_id=tenant_id,
                rule=TENANT_BURST,
                observed_count=observed,
                threshold=self.settings.abuse_max_transactions,
                window_seconds=int(window.total_seconds()),
            ))

        if action_key:
            action_window = timedelta(minutes=self.settings.abuse_action_window_minutes)
            observed = await self._count(tenant_id, now - action_window, action_key)
            if observed > self.settings.abuse_max_action_transactions:
                signals.append(AbuseSignal(
                    tenant_id=tenant_id,
                    rule=ACTION_BURST,
                    observed_count=observed,
                    threshold=self.settings.abuse_max_action_transactions,
                    window_seconds=int(action_window.total_seconds()),
                    action_type=action_key,
                ))

        recorded = []
        for signal in signals:
            since = now - timedelta(seconds=signal.window_seconds)
            if await self._already_flagged(signal, since):
                continue
            self.db.add(CreditAbuseEvent(
                tenant_id=signal.tenant_id,
                rule=signal.rule,
                action_type=signal.action_type,
                observed_count=signal.observed_count,
                threshold=signal.threshold,
                window_seconds=signal.window_seconds,
                created_at=now,
            ))
            recorded.append(signal)
        return recorded

    async def _count(self, tenant_id: uuid.UUID, since: datetime, action_type: Optional[str] = None) -> int:
        conditions = [
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.created_at >= since,
        ]
        if action_type:
            conditions.append(CreditTransaction.action_type == action_type)
        query = select(func.count()).select_from(CreditTransaction).where(and_(*conditions))
        return int((await self.db.execute(query)).scalar_one())

    async def _already_flagged(self, signal: AbuseSignal, since: datetime) -> bool:
        conditions = [
            CreditAbuseEvent.tenant_id == signal.tenant_id,
            CreditAbuseEvent.rule == signal.rule,
            CreditAbuseEvent.created_at >= since,
        ]
        if signal.action_type:
            conditions.append(CreditAbuseEvent.action_type == signal.action_type)
        query = select(CreditAbuseEvent.id).where(and_(*conditions)).limit(1)
        return (await self.db.execute(query)).first() is not None

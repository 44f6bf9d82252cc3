"""Event publishing for tenant and credit ledger changes.

Events are published after the change they describe has committed, so a
consumer never sees a balance movement that was later rolled back. Delivery is
best effort; the ledger itself is the record of truth.
"""

import json
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from src.core.settings import get_settings

logger = logging.getLogger(__name__)

EVENT_SOURCE = "tenant_ledger_service"
MOCK_HISTORY_SIZE = 1000


class EventType(Enum):
    FREE_CREDITS_GRANTED = "credits.free_granted"
    CREDITS_PURCHASED = "credits.purchased"
    CREDITS_CONSUMED = "credits.consumed"
    CREDITS_ADJUSTED = "credits.adjusted"
    CREDITS_REFUNDED = "credits.refunded"
    BONUS_CREDITS_GRANTED = "credits.bonus_granted"
    ABUSE_SUSPECTED = "credits.abuse_suspected"
    TENANT_CREATED = "tenant.created"
    TENANT_PLAN_CHANGED = "tenant.plan_changed"
    TENANT_STATUS_CHANGED = "tenant.status_changed"

    @property
    def is_ledger_event(self) -> bool:
        return self.value.startswith("credits.")


@dataclass
class LedgerEvent:
    """A committed change, addressed to the tenant it belongs to."""
    event_type: EventType
    tenant_id: str
    resource_id: str
    resource_type: str
    data: Dict[str, Any]
    user_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    source: str = EVENT_SOURCE
    version: str = "1.0"

    def to_message(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["event_type"] = self.event_type.value
        return payload

    def message_attributes(self) -> Dict[str, Dict[str, str]]:
        """SQS attributes consumers can filter on without parsing the body."""
        attributes = {
            "event_type": self.event_type.value,
            "tenant_id": self.tenant_id,
            "resource_type": self.resource_type,
        }
        if self.event_type.is_ledger_event and "new_balance" in self.data:
            attributes["new_balance"] = str(self.data["new_balance"])
        return {
            name: {"StringValue": value, "DataType": "String"}
            for name, value in attributes.items()
        }


class EventPublisher:
    """
    Sends events to SQS, or keeps them in memory with the ``mock`` bus.

    A failed publish is logged and reported as False; it never reverses the
    committed change.
    """

    def __init__(self):
        settings = get_settings()
        self.event_bus_type = settings.event_bus_type
        self.queue_url = settings.sqs_event_queue_url
        self.sqs_client = None
        self.published = deque(maxlen=MOCK_HISTORY_SIZE)

        if self.event_bus_type == "sqs":
            self.sqs_client = self._create_sqs_client()

    def _create_sqs_client(self):
        settings = get_settings()
        try:
            client = boto3.client(
                "sqs",
                region_name=settings.aws_region,
                aws_access_key_id=settings.aws_access_key_id,
                aws_secret_access_key=settings.aws_secret_access_key,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to initialize SQS client: {e}")
            return None
        logger.info("SQS client initialized for event publishing")
        return client

    async def publish(
        self,
        event_type: EventType,
        tenant_id: Any,
        resource_id: Any,
        resource_type: str,
        data: Dict[str, Any],
        user_id: Optional[Any] = None,
    ) -> bool:
        """Build and publish an event."""
        event = LedgerEvent(
            event_type=event_type,
            tenant_id=str(tenant_id),
            resource_id=str(resource_id),
            resource_type=resource_type,
            data=data,
            user_id=str(user_id) if user_id is not None else None,
        )
        return await self.publish_event(event)

    async def publish_event(self, event: LedgerEvent) -> bool:
        if self.event_bus_type != "sqs":
            self.published.append(event)
            logger.info(f"MOCK EVENT: {event.event_type.value} for tenant {event.tenant_id}")
            return True

        if not self.sqs_client or not self.queue_url:
            logger.warning(f"SQS not configured, dropping event {event.event_id}")
            return False

        try:
            response = self.sqs_client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(event.to_message(), default=str),
                MessageAttributes=event.message_attributes(),
                # FIFO queues keep each tenant's events in ledger order
                MessageGroupId=event.tenant_id,
                MessageDeduplicationId=event.event_id,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to publish event {event.event_id}: {e}")
            return False

        logger.info(f"Published event {event.event_id} to SQS: {response['MessageId']}")
        return True

    def of_type(self, event_type: EventType) -> List[LedgerEvent]:
        """Events kept by the mock bus with the given type, oldest first."""
        return [event for event in self.published if event.event_type == event_type]


_event_publisher: Optional[EventPublisher] = None


def get_event_publisher() -> EventPublisher:
    """Process-wide publisher."""
    global _event_publisher
    if _event_publisher is None:
        _event_publisher = EventPublisher()
    return _event_publisher

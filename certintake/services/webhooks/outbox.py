from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from certintake.domain.events import DomainEvent
from certintake.domain.models import WebhookEvent


logger = logging.getLogger(__name__)


def record_event(session: AsyncSession, event: DomainEvent) -> WebhookEvent:
    # Add to the caller's unit of work; the event commits or rolls back with the state change.
    row = WebhookEvent(
        id=uuid4().hex,
        tenant_id=event.tenant_id,
        event_type=event.event_type,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        payload=event.payload(),
        callback_url=event.callback_url,
        processed=False,
    )
    session.add(row)
    logger.debug(
        "outbox_event_recorded event_id=%s event_type=%s entity_id=%s",
        row.id,
        row.event_type,
        row.entity_id,
    )
    return row

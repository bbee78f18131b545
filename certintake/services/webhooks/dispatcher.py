from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import hashlib
import hmac
import json
import logging
import time
from typing import Any
from uuid import uuid4

import httpx
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certintake.core.config import get_settings
from certintake.core.errors import DeliveryExhausted
from certintake.core.timeutil import as_utc, isoformat, utc_now
from certintake.domain.events import WEBHOOK_TEST
from certintake.domain.lifecycle import (
    DELIVERY_EXHAUSTED,
    DELIVERY_FAILED,
    DELIVERY_SUCCESS,
    TERMINAL_DELIVERY_OUTCOMES,
)
from certintake.domain.models import WebhookDelivery, WebhookEndpoint, WebhookEvent
from certintake.persistence.db import SessionLocal
from certintake.persistence.repos import webhooks as webhooks_repo


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
_USER_AGENT = "certintake-webhooks/1.0"
# Endpoints subscribed to this pseudo-event receive every event type.
WILDCARD_EVENT = "*"


@dataclass(frozen=True)
class DeliveryTarget:
    url: str
    endpoint_id: str | None
    secret: str | None
    headers: dict[str, str]
    timeout_s: float


@dataclass(frozen=True)
class SendResult:
    ok: bool
    status_code: int | None
    body: str | None
    error: str | None
    duration_ms: int
    # Wall-clock time the request was started; stamped on the delivery row.
    started_at: datetime = field(default_factory=utc_now)


@dataclass
class DispatchReport:
    events_scanned: int = 0
    attempts: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    events_processed: int = 0
    errors: int = 0


def serialize_payload(payload: dict[str, Any]) -> bytes:
    # Serialize deterministically so signatures stay stable across retries.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(*, secret: str, payload_bytes: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def retry_backoff_ms(*, seed: str, attempt_no: int) -> int:
    # Exponential backoff plus a jitter derived from the seed, capped at WEBHOOK_BACKOFF_MAX_MS.
    settings = get_settings()
    base = max(1, int(settings.webhook_backoff_ms))
    cap = max(base, int(settings.webhook_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{seed}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


def build_event_body(event: WebhookEvent) -> dict[str, Any]:
    return {
        "event": event.event_type,
        "event_id": event.id,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "timestamp": isoformat(event.created_at),
        "data": event.payload,
    }


def _unexpected_failure(exc: BaseException, *, body_max_chars: int) -> SendResult:
    # A send that raised still counts as one failed attempt for its target.
    return SendResult(
        ok=False,
        status_code=None,
        body=None,
        error=f"{exc.__class__.__name__}: {exc}"[:body_max_chars],
        duration_ms=0,
    )


def _subscribed(endpoint: WebhookEndpoint, event_type: str) -> bool:
    events = endpoint.events or []
    return event_type in events or WILDCARD_EVENT in events


class WebhookSender:
    """POST one payload to one target and report the outcome without raising."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, follow_redirects=False)

    async def send(
        self,
        client: httpx.AsyncClient,
        target: DeliveryTarget,
        *,
        body: bytes,
        headers: dict[str, str],
        body_max_chars: int,
    ) -> SendResult:
        started_at = utc_now()
        started = time.monotonic()
        try:
            response = await client.post(target.url, content=body, headers=headers, timeout=target.timeout_s)
        except Exception as exc:  # noqa: BLE001 - malformed targets and transport errors are failed attempts
            return SendResult(
                ok=False,
                status_code=None,
                body=None,
                error=f"{exc.__class__.__name__}: {exc}"[:body_max_chars],
                duration_ms=int((time.monotonic() - started) * 1000),
                started_at=started_at,
            )
        duration_ms = int((time.monotonic() - started) * 1000)
        text = response.text[:body_max_chars] if response.text else None
        ok = 200 <= response.status_code < 300
        return SendResult(
            ok=ok,
            status_code=int(response.status_code),
            body=text,
            error=None if ok else f"http_{response.status_code}",
            duration_ms=duration_ms,
            started_at=started_at,
        )


_sender: WebhookSender | None = None


def get_webhook_sender() -> WebhookSender:
    global _sender
    if _sender is None:
        _sender = WebhookSender()
    return _sender


def set_webhook_sender(sender: WebhookSender | None) -> None:
    # Tests install a sender backed by httpx.MockTransport.
    global _sender
    _sender = sender


class WebhookDispatcher:
    def __init__(
        self,
        *,
        sender: WebhookSender | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._sender = sender or get_webhook_sender()
        self._session_factory = session_factory or SessionLocal

    async def dispatch_once(self, *, now: datetime | None = None) -> DispatchReport:
        """Run one pass over unprocessed outbox events.

        Due targets of an event are posted concurrently; every attempt appends
        a delivery row. Events and targets fail independently.
        """
        settings = get_settings()
        resolved_now = now or utc_now()
        report = DispatchReport()
        async with self._session_factory() as session:
            events = await webhooks_repo.list_pending_events(
                session, limit=max(1, int(settings.webhook_batch_size))
            )
        report.events_scanned = len(events)
        if not events:
            return report
        async with self._sender.client() as client:
            for event in events:
                try:
                    await self._dispatch_event(client, event, now=resolved_now, report=report)
                except Exception:  # noqa: BLE001 - one event must not block the rest of the batch
                    report.errors += 1
                    logger.exception("webhook_event_dispatch_failed event_id=%s", event.id)
        return report

    async def _resolve_targets(self, session: AsyncSession, event: WebhookEvent) -> list[DeliveryTarget]:
        settings = get_settings()
        default_timeout_s = max(0.2, settings.webhook_timeout_ms / 1000.0)
        targets: dict[str, DeliveryTarget] = {}
        for endpoint in await webhooks_repo.list_active_endpoints(session, event.tenant_id):
            if not _subscribed(endpoint, event.event_type) or endpoint.url in targets:
                continue
            timeout_s = endpoint.timeout_ms / 1000.0 if endpoint.timeout_ms else default_timeout_s
            targets[endpoint.url] = DeliveryTarget(
                url=endpoint.url,
                endpoint_id=endpoint.id,
                secret=endpoint.secret,
                headers=dict(endpoint.headers or {}),
                timeout_s=max(0.2, timeout_s),
            )
        if event.callback_url and event.callback_url not in targets:
            targets[event.callback_url] = DeliveryTarget(
                url=event.callback_url,
                endpoint_id=None,
                secret=None,
                headers={},
                timeout_s=default_timeout_s,
            )
        return list(targets.values())

    def _headers(self, event: WebhookEvent, target: DeliveryTarget, *, body: bytes, attempt_no: int) -> dict[str, str]:
        headers = {str(k): str(v) for k, v in target.headers.items()}
        headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": _USER_AGENT,
                "X-Webhook-Event": event.event_type,
                "X-Webhook-Id": event.id,
                "X-Webhook-Delivery": uuid4().hex,
                "X-Webhook-Attempt": str(attempt_no),
            }
        )
        if target.secret:
            headers[SIGNATURE_HEADER] = sign_payload(secret=target.secret, payload_bytes=body)
        return headers

    async def _dispatch_event(
        self,
        client: httpx.AsyncClient,
        event: WebhookEvent,
        *,
        now: datetime,
        report: DispatchReport,
    ) -> None:
        settings = get_settings()
        max_attempts = max(1, int(settings.webhook_max_attempts))
        async with self._session_factory() as session:
            targets = await self._resolve_targets(session, event)
            latest = await webhooks_repo.latest_attempts_for_event(session, event.id)

        due: list[tuple[DeliveryTarget, int]] = []
        for target in targets:
            previous = latest.get(target.url)
            if previous is None:
                due.append((target, 1))
                continue
            if previous.outcome in TERMINAL_DELIVERY_OUTCOMES:
                continue
            next_at = as_utc(previous.next_attempt_at)
            if next_at is None or next_at <= now:
                due.append((target, previous.attempt_no + 1))

        body = serialize_payload(build_event_body(event))
        body_max_chars = max(1, int(settings.webhook_response_body_max_chars))
        results = await asyncio.gather(
            *(
                self._sender.send(
                    client,
                    target,
                    body=body,
                    headers=self._headers(event, target, body=body, attempt_no=attempt_no),
                    body_max_chars=body_max_chars,
                )
                for target, attempt_no in due
            ),
            return_exceptions=True,
        )

        async with self._session_factory() as session:
            outcomes: dict[str, str] = {
                url: row.outcome for url, row in latest.items() if row.outcome in TERMINAL_DELIVERY_OUTCOMES
            }
            for (target, attempt_no), result in zip(due, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    result = _unexpected_failure(result, body_max_chars=body_max_chars)
                outcome, next_attempt_at, error_message = self._classify(
                    event, target, result, attempt_no=attempt_no, max_attempts=max_attempts, now=now
                )
                session.add(
                    WebhookDelivery(
                        id=uuid4().hex,
                        event_id=event.id,
                        endpoint_id=target.endpoint_id,
                        target_url=target.url,
                        attempt_no=attempt_no,
                        outcome=outcome,
                        response_status=result.status_code,
                        response_body=result.body,
                        error_message=error_message,
                        duration_ms=result.duration_ms,
                        attempted_at=result.started_at,
                        next_attempt_at=next_attempt_at,
                    )
                )
                if target.endpoint_id:
                    await self._record_endpoint_health(session, target.endpoint_id, ok=result.ok, now=now)
                report.attempts += 1
                if outcome == DELIVERY_SUCCESS:
                    report.succeeded += 1
                elif outcome == DELIVERY_EXHAUSTED:
                    report.exhausted += 1
                else:
                    report.failed += 1
                if outcome in TERMINAL_DELIVERY_OUTCOMES:
                    outcomes[target.url] = outcome

            # Processed once every current target has reached a terminal outcome.
            if all(target.url in outcomes for target in targets):
                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == event.id, WebhookEvent.processed.is_(False))
                    .values(processed=True, processed_at=now)
                    .execution_options(synchronize_session=False)
                )
                report.events_processed += 1
                if not targets:
                    logger.debug("webhook_event_no_subscribers event_id=%s", event.id)
            try:
                await session.commit()
            except IntegrityError:
                # Another dispatcher recorded the same attempt numbers first.
                await session.rollback()
                logger.warning("webhook_attempt_conflict event_id=%s", event.id)

    def _classify(
        self,
        event: WebhookEvent,
        target: DeliveryTarget,
        result: SendResult,
        *,
        attempt_no: int,
        max_attempts: int,
        now: datetime,
    ) -> tuple[str, datetime | None, str | None]:
        if result.ok:
            logger.info(
                "webhook_delivered event_id=%s target=%s attempt=%s status=%s",
                event.id,
                target.url,
                attempt_no,
                result.status_code,
            )
            return DELIVERY_SUCCESS, None, None
        if attempt_no >= max_attempts:
            exhausted = DeliveryExhausted(
                f"Delivery failed after {attempt_no} attempts",
                details={"last_error": result.error},
            )
            logger.warning(
                "webhook_delivery_exhausted event_id=%s target=%s attempts=%s error=%s",
                event.id,
                target.url,
                attempt_no,
                result.error,
            )
            return DELIVERY_EXHAUSTED, None, f"{exhausted.code}: {exhausted.message} ({result.error})"
        delay_ms = retry_backoff_ms(seed=f"{event.id}:{target.url}", attempt_no=attempt_no)
        logger.info(
            "webhook_delivery_retry_scheduled event_id=%s target=%s attempt=%s delay_ms=%s error=%s",
            event.id,
            target.url,
            attempt_no,
            delay_ms,
            result.error,
        )
        return DELIVERY_FAILED, now + timedelta(milliseconds=delay_ms), result.error

    async def _record_endpoint_health(
        self, session: AsyncSession, endpoint_id: str, *, ok: bool, now: datetime
    ) -> None:
        # Consecutive-failure counter; any success resets it.
        if ok:
            await session.execute(
                update(WebhookEndpoint)
                .where(WebhookEndpoint.id == endpoint_id)
                .values(failure_count=0, last_delivery_status=DELIVERY_SUCCESS, last_delivery_at=now)
                .execution_options(synchronize_session=False)
            )
            return
        bumped = await session.execute(
            update(WebhookEndpoint)
            .where(WebhookEndpoint.id == endpoint_id)
            .values(
                failure_count=WebhookEndpoint.failure_count + 1,
                last_delivery_status=DELIVERY_FAILED,
                last_delivery_at=now,
            )
            .returning(WebhookEndpoint.failure_count)
            .execution_options(synchronize_session=False)
        )
        failure_count = bumped.scalar()
        threshold = int(get_settings().webhook_endpoint_failure_threshold)
        if failure_count is None or threshold <= 0 or failure_count < threshold:
            return
        # Take the endpoint out of rotation; a PATCH with isActive=true brings it back.
        disabled = await session.execute(
            update(WebhookEndpoint)
            .where(WebhookEndpoint.id == endpoint_id, WebhookEndpoint.is_active.is_(True))
            .values(is_active=False, updated_at=now)
            .returning(WebhookEndpoint.id)
            .execution_options(synchronize_session=False)
        )
        if disabled.first() is not None:
            logger.warning(
                "webhook_endpoint_disabled endpoint_id=%s failure_count=%s threshold=%s",
                endpoint_id,
                failure_count,
                threshold,
            )

    async def send_test(self, endpoint: WebhookEndpoint) -> WebhookDelivery:
        """Send a synthetic signed event to one endpoint right away.

        The attempt is stored like any other delivery under an already
        processed event, so the dispatcher never retries it and endpoint
        health is left untouched.
        """
        settings = get_settings()
        now = utc_now()
        event = WebhookEvent(
            id=uuid4().hex,
            tenant_id=endpoint.tenant_id,
            event_type=WEBHOOK_TEST,
            entity_type="webhook_endpoint",
            entity_id=endpoint.id,
            payload={"endpointId": endpoint.id, "message": "Test delivery from certintake"},
            callback_url=None,
            processed=True,
            processed_at=now,
            created_at=now,
        )
        default_timeout_s = max(0.2, settings.webhook_timeout_ms / 1000.0)
        target = DeliveryTarget(
            url=endpoint.url,
            endpoint_id=endpoint.id,
            secret=endpoint.secret,
            headers=dict(endpoint.headers or {}),
            timeout_s=max(0.2, endpoint.timeout_ms / 1000.0) if endpoint.timeout_ms else default_timeout_s,
        )
        body = serialize_payload(build_event_body(event))
        async with self._sender.client() as client:
            result = await self._sender.send(
                client,
                target,
                body=body,
                headers=self._headers(event, target, body=body, attempt_no=1),
                body_max_chars=max(1, int(settings.webhook_response_body_max_chars)),
            )
        delivery = WebhookDelivery(
            id=uuid4().hex,
            event_id=event.id,
            endpoint_id=endpoint.id,
            target_url=target.url,
            attempt_no=1,
            outcome=DELIVERY_SUCCESS if result.ok else DELIVERY_FAILED,
            response_status=result.status_code,
            response_body=result.body,
            error_message=result.error,
            duration_ms=result.duration_ms,
            attempted_at=result.started_at,
            next_attempt_at=None,
        )
        async with self._session_factory() as session:
            session.add(event)
            await session.flush()
            session.add(delivery)
            await session.commit()
        logger.info(
            "webhook_test_sent endpoint_id=%s ok=%s status=%s error=%s",
            endpoint.id,
            result.ok,
            result.status_code,
            result.error,
        )
        return delivery

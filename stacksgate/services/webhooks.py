"""Webhook signing, delivery and retry.

Provides:
- ``sign_payload`` / ``verify_signature`` / ``verify_webhook_payload`` — the
  ``t={ts},v1={hex}`` HMAC-SHA256 scheme over ``"{ts}.{body}"``
- ``build_payment_intent_event`` — the event envelope merchants receive
- ``WebhookDispatcher`` — bounded queue + worker tasks, one POST per attempt,
  a log entry per attempt, and timed retries up to the attempt cap

Delivery is at-least-once best effort. Retry timers live in memory only; the
batch ``retry_failed_webhooks`` sweep recovers anything lost with the process.
"""

import asyncio
import hashlib
import hmac
import json
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

import httpx
import structlog

from stacksgate.core.clock import Clock, unix_seconds, utc_now
from stacksgate.core.exceptions import DeliveryFailure, ValidationError
from stacksgate.domain.payment_status import event_type_for
from stacksgate.repositories.base import MerchantDirectory, WebhookLogRepository
from stacksgate.schemas.payments import PaymentIntent, new_event_id
from stacksgate.schemas.webhooks import WebhookJob, WebhookLogEntry, WebhookStats
from stacksgate.services.payment_intents import PaymentIntentService

logger = structlog.get_logger(__name__)

USER_AGENT = "StacksGate-Webhooks/1.0"
MAX_ATTEMPTS = 3
RETRY_DELAYS = (1.0, 5.0, 15.0)  # seconds, indexed by attempt - 1
SIGNATURE_TOLERANCE_SECONDS = 300
STATS_WINDOW_DAYS = 30
MAX_RESPONSE_BODY = 10_000


def canonical_json(payload: dict[str, Any]) -> str:
    """Deterministic body: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hmac_hex(body: str, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.{body}".encode()
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign_payload(body: str, secret: str, timestamp: int) -> str:
    """Build the ``X-StacksGate-Signature`` header value."""
    return f"t={timestamp},v1={_hmac_hex(body, secret, timestamp)}"


def _parse_signature_header(header: str) -> dict[str, str]:
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    return parts


def verify_webhook_payload(
    body: str,
    header: str | None,
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: int | None = None,
    clock: Clock = utc_now,
) -> tuple[bool, str | None]:
    """Check a received webhook. Returns ``(valid, error)``."""
    if not header:
        return False, "Missing signature"

    parts = _parse_signature_header(header)
    if "t" not in parts or "v1" not in parts:
        return False, "Malformed signature header"

    try:
        timestamp = int(parts["t"])
    except ValueError:
        return False, "Invalid timestamp"

    current = unix_seconds(clock()) if now is None else now
    if abs(current - timestamp) > tolerance:
        return False, "Timestamp outside tolerance"

    expected = _hmac_hex(body, secret, timestamp)
    # bytes: compare_digest rejects non-ASCII str operands with TypeError
    received = parts["v1"].encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(expected.encode(), received):
        return False, "Signature mismatch"

    return True, None


def verify_signature(
    body: str,
    header: str | None,
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: int | None = None,
    clock: Clock = utc_now,
) -> bool:
    valid, _ = verify_webhook_payload(body, header, secret, tolerance=tolerance, now=now, clock=clock)
    return valid


def build_payment_intent_event(
    snapshot: dict[str, Any],
    event_type: str | None = None,
    created: int | None = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    """Wrap a payment intent snapshot in the event envelope."""
    return {
        "id": new_event_id(),
        "object": "event",
        "type": event_type or event_type_for(snapshot["status"]),
        "created": unix_seconds(clock()) if created is None else created,
        "data": {"object": snapshot},
    }


class WebhookDispatcher:
    """Signs, POSTs and retries merchant notifications.

    Jobs are accepted with ``submit`` (never blocks) and consumed by
    ``workers`` tasks. A failed attempt below the cap schedules a tracked retry
    task that sleeps ``retry_delays[attempt - 1]`` and sends again.

    Usage:
        dispatcher = WebhookDispatcher(log_repo, merchants)
        dispatcher.start()
        dispatcher.notify_payment_intent(intent)
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        log_repository: WebhookLogRepository,
        merchants: MerchantDirectory,
        timeout: float = 10.0,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delays: tuple[float, ...] | list[float] = RETRY_DELAYS,
        queue_size: int = 1000,
        workers: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_batch_limit: int = 100,
        retry_window_hours: float = 24,
        retry_spacing: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Clock = utc_now,
    ):
        self.log_repository = log_repository
        self.merchants = merchants
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delays = tuple(retry_delays)
        self.worker_count = workers
        self.retry_batch_limit = retry_batch_limit
        self.retry_window_hours = retry_window_hours
        self.retry_spacing = retry_spacing
        self.transport = transport
        self._sleep = sleep
        self.clock = clock

        self._queue: asyncio.Queue[WebhookJob] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task] = []
        self._retry_tasks: set[asyncio.Task] = set()
        self._side_tasks: set[asyncio.Task] = set()
        self._retrying_events: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    @property
    def pending_retries(self) -> int:
        """Number of scheduled retries not yet sent."""
        return sum(1 for task in self._retry_tasks if not task.done())

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"webhook-worker-{i}") for i in range(self.worker_count)
        ]
        logger.info("webhook_dispatcher_started", workers=self.worker_count)

    async def drain(self) -> None:
        """Wait until the queue is empty and every scheduled retry has run."""
        while True:
            if self.running:
                await self._queue.join()
            tasks = [t for t in self._retry_tasks | self._side_tasks if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self, timeout: float = 10.0) -> None:
        """Let workers finish queued jobs, then cancel workers and pending retries."""
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning("webhook_dispatcher_stop_timeout", queued=self._queue.qsize())

        dropped_retries = self.pending_retries
        pending = [t for t in (*self._workers, *self._retry_tasks, *self._side_tasks) if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._workers = []
        self._retry_tasks.clear()
        self._side_tasks.clear()
        self._retrying_events.clear()
        logger.info("webhook_dispatcher_stopped", dropped_retries=dropped_retries)

    def _track(self, tasks: set[asyncio.Task], coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def submit(self, job: WebhookJob) -> bool:
        """Enqueue a delivery without blocking.

        Returns False when the queue is full; the drop is recorded as an
        undelivered attempt so the batch retry can pick it up.
        """
        try:
            self._queue.put_nowait(job)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "webhook_queue_full",
                merchant_id=job.merchant_id,
                event_type=job.payload.get("type"),
            )
            self._track(self._side_tasks, self._record_dropped(job))
            return False

    async def _record_dropped(self, job: WebhookJob) -> None:
        url = job.url
        if url is None:
            target = await self.merchants.get_webhook_target(job.merchant_id)
            if target is None:
                return
            url = target.url
        await self._write_log(
            WebhookLogEntry(
                merchant_id=job.merchant_id,
                payment_intent_id=job.payment_intent_id,
                event_type=job.payload.get("type", "unknown"),
                event_id=job.payload.get("id"),
                webhook_url=url,
                request_payload=job.payload,
                response_body="Delivery queue full",
                attempt_number=job.attempt,
                created_at=self.clock(),
            )
        )

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            except Exception as exc:
                logger.error(
                    "webhook_worker_job_failed",
                    worker=index,
                    merchant_id=job.merchant_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def _process(self, job: WebhookJob) -> bool:
        url, secret = job.url, job.secret
        if url is None:
            target = await self.merchants.get_webhook_target(job.merchant_id)
            if target is None:
                logger.debug("webhook_target_missing", merchant_id=job.merchant_id)
                return False
            url, secret = target.url, target.secret

        return await self.send(
            job.merchant_id,
            url,
            secret,
            job.payload,
            intent_id=job.payment_intent_id,
            attempt=job.attempt,
        )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send(
        self,
        merchant_id: str,
        url: str,
        secret: str | None,
        payload: dict[str, Any],
        intent_id: str | None = None,
        attempt: int = 1,
    ) -> bool:
        """POST one attempt and log it.

        Returns True on 2xx. On failure below the attempt cap a retry is
        scheduled and False is returned immediately.
        """
        body = canonical_json(payload)
        timestamp = unix_seconds(self.clock())
        event_type = payload.get("type", "unknown")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-StacksGate-Event": event_type,
            "X-StacksGate-Timestamp": str(timestamp),
        }
        if secret:
            headers["X-StacksGate-Signature"] = sign_payload(body, secret, timestamp)

        delivered = False
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, content=body, headers=headers)
            if not response.is_success:
                raise DeliveryFailure(response.status_code, response.text)
            delivered = True
            status_code, response_body = response.status_code, response.text
        except DeliveryFailure as exc:
            status_code, response_body = exc.status_code, exc.body
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            # Never reached a response: timeouts, DNS, refused connections
            status_code, response_body = 0, str(exc) or type(exc).__name__

        await self._write_log(
            WebhookLogEntry(
                merchant_id=merchant_id,
                payment_intent_id=intent_id,
                event_type=event_type,
                event_id=payload.get("id"),
                webhook_url=url,
                request_payload=payload,
                response_status=status_code,
                response_body=response_body[:MAX_RESPONSE_BODY],
                delivered=delivered,
                attempt_number=attempt,
                created_at=self.clock(),
            )
        )

        if delivered:
            logger.info(
                "webhook_delivered",
                merchant_id=merchant_id,
                event_type=event_type,
                status_code=status_code,
                attempt=attempt,
            )
            return True

        logger.warning(
            "webhook_delivery_failed",
            merchant_id=merchant_id,
            event_type=event_type,
            status_code=status_code,
            attempt=attempt,
        )

        if attempt < self.max_attempts:
            job = WebhookJob(
                merchant_id=merchant_id,
                payload=payload,
                payment_intent_id=intent_id,
                attempt=attempt + 1,
                url=url,
                secret=secret,
            )
            self._schedule_retry(job)
        else:
            logger.error(
                "webhook_delivery_abandoned",
                merchant_id=merchant_id,
                event_type=event_type,
                attempts=attempt,
            )
        return False

    def _schedule_retry(self, job: WebhookJob) -> None:
        index = min(job.attempt - 2, len(self.retry_delays) - 1)
        delay = self.retry_delays[index] if index >= 0 else 0.0
        event_id = job.payload.get("id")
        if event_id:
            self._retrying_events.add(event_id)
        self._track(self._retry_tasks, self._retry_after(delay, job))
        logger.debug("webhook_retry_scheduled", merchant_id=job.merchant_id, attempt=job.attempt, delay=delay)

    async def _retry_after(self, delay: float, job: WebhookJob) -> None:
        await self._sleep(delay)
        event_id = job.payload.get("id")
        if event_id:
            self._retrying_events.discard(event_id)
        try:
            await self.send(
                job.merchant_id,
                job.url,
                job.secret,
                job.payload,
                intent_id=job.payment_intent_id,
                attempt=job.attempt,
            )
        except Exception as exc:
            logger.error(
                "webhook_retry_failed",
                merchant_id=job.merchant_id,
                attempt=job.attempt,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _write_log(self, entry: WebhookLogEntry) -> None:
        try:
            await self.log_repository.add(entry)
        except Exception as exc:
            logger.error(
                "webhook_log_write_failed",
                merchant_id=entry.merchant_id,
                event_type=entry.event_type,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def notify_payment_intent(self, intent: PaymentIntent) -> bool:
        """Queue a ``payment_intent.<status>`` event for the intent's merchant."""
        snapshot = PaymentIntentService.to_snapshot(intent)
        payload = build_payment_intent_event(snapshot, clock=self.clock)
        return self.submit(
            WebhookJob(merchant_id=intent.merchant_id, payload=payload, payment_intent_id=intent.id)
        )

    async def send_test_webhook(self, merchant_id: str) -> bool:
        """Send a ``test.webhook`` event straight to the merchant's endpoint.

        Raises:
            ValidationError: merchant has no webhook URL configured
        """
        target = await self.merchants.get_webhook_target(merchant_id)
        if target is None:
            raise ValidationError(f"Merchant {merchant_id} has no webhook URL configured")

        now = unix_seconds(self.clock())
        payload = {
            "id": new_event_id(),
            "object": "event",
            "type": "test.webhook",
            "created": now,
            "data": {"object": {"message": "This is a test webhook from StacksGate", "timestamp": now}},
        }
        return await self.send(merchant_id, target.url, target.secret, payload)

    async def retry_failed_webhooks(
        self,
        limit: int | None = None,
        window_hours: float | None = None,
        spacing: float | None = None,
    ) -> int:
        """Re-send the latest undelivered attempt of each recent event.

        Events already delivered, at the attempt cap, or with a retry still
        scheduled in this process are skipped. Returns the number re-sent.
        """
        limit = self.retry_batch_limit if limit is None else limit
        window_hours = self.retry_window_hours if window_hours is None else window_hours
        spacing = self.retry_spacing if spacing is None else spacing

        since = self.clock() - timedelta(hours=window_hours)
        entries = await self.log_repository.list_since(since)

        latest: dict[str, WebhookLogEntry] = {}
        delivered_events: set[str] = set()
        for entry in entries:
            key = entry.event_id or f"{entry.merchant_id}:{entry.payment_intent_id}:{entry.event_type}"
            if entry.delivered:
                delivered_events.add(key)
            current = latest.get(key)
            if current is None or entry.attempt_number >= current.attempt_number:
                latest[key] = entry

        candidates = [
            entry
            for key, entry in latest.items()
            if key not in delivered_events
            and key not in self._retrying_events
            and entry.attempt_number < self.max_attempts
        ]
        candidates.sort(key=lambda e: e.created_at, reverse=True)
        candidates = candidates[:limit]

        resent = 0
        for entry in candidates:
            target = await self.merchants.get_webhook_target(entry.merchant_id)
            secret = target.secret if target else None
            await self.send(
                entry.merchant_id,
                entry.webhook_url,
                secret,
                entry.request_payload,
                intent_id=entry.payment_intent_id,
                attempt=entry.attempt_number + 1,
            )
            resent += 1
            if spacing > 0:
                await self._sleep(spacing)

        logger.info("webhook_batch_retry_complete", candidates=len(candidates), resent=resent)
        return resent

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_logs(self, merchant_id: str, limit: int = 50, offset: int = 0) -> list[WebhookLogEntry]:
        return await self.log_repository.list_for_merchant(merchant_id, limit=limit, offset=offset)

    async def get_stats(self, merchant_id: str, days: int = STATS_WINDOW_DAYS) -> WebhookStats:
        since = self.clock() - timedelta(days=days)
        entries = await self.log_repository.list_for_merchant(merchant_id, since=since)
        if not entries:
            return WebhookStats()

        total = len(entries)
        successful = sum(1 for e in entries if e.delivered)
        return WebhookStats(
            total_webhooks=total,
            successful_webhooks=successful,
            failed_webhooks=total - successful,
            success_rate=round(successful / total * 100),
            avg_attempts=round(sum(e.attempt_number for e in entries) / total, 2),
            unique_event_types=len({e.event_type for e in entries}),
        )

"""Webhook event ledger and asynchronous dispatch.

``EventDispatcher.ingest`` verifies a provider signature over the raw body,
records the event in the ledger keyed by (provider, external event id) and
enqueues it, returning before any handler runs. Worker tasks drain a bounded
``asyncio.Queue``; each item is claimed with a compare-and-set on the ledger
status so an event is handed to its handler at most once per claim:

    received  -> processing -> processed
    failed    -> processing -> processed | failed

Rows left in ``received`` (queue full, process restart) are re-enqueued on
``start()`` or on the provider's next redelivery. A handler cancelled by
``stop()`` hands its row back to ``received``. Rows stuck in ``processing``
after a hard crash are not recovered automatically.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from junicore.logging import get_logger
from junicore.service.errors import SignatureFailure, TransientFailure, ValidationFailure
from junicore.service.result import Err
from junicore.service.webhooks import WebhookVerifier
from junicore.storage.errors import UnstorableValue
from junicore.storage.models import EventStatus, WebhookEvent

logger = get_logger(__name__)

STRIPE = "stripe"
CHECKR = "checkr"

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_WORKER_COUNT = 2
MAX_ERROR_LENGTH = 2000


# Decoded event variants


@dataclass(frozen=True)
class _EventBase:
    provider: str
    external_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class SubscriptionChanged(_EventBase):
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def action(self) -> str:
        return self.event_type.rsplit(".", 1)[-1]


@dataclass(frozen=True)
class InvoicePayment(_EventBase):
    invoice_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount_paid: int = 0
    succeeded: bool = False


@dataclass(frozen=True)
class ConnectAccountUpdated(_EventBase):
    account_id: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.charges_enabled and self.payouts_enabled and self.details_submitted


@dataclass(frozen=True)
class TransferEvent(_EventBase):
    transfer_id: Optional[str] = None
    amount: int = 0
    failed: bool = False


@dataclass(frozen=True)
class BackgroundCheckInvitation(_EventBase):
    candidate_id: Optional[str] = None
    report_id: Optional[str] = None
    expired: bool = False


@dataclass(frozen=True)
class BackgroundCheckReport(_EventBase):
    report_id: Optional[str] = None
    candidate_id: Optional[str] = None
    status: Optional[str] = None
    result: Optional[str] = None
    assessment: Optional[str] = None

    @property
    def stage(self) -> str:
        return self.event_type.split(".", 1)[-1]


@dataclass(frozen=True)
class UnrecognizedEvent(_EventBase):
    pass


WebhookEventVariant = Union[
    SubscriptionChanged,
    InvoicePayment,
    ConnectAccountUpdated,
    TransferEvent,
    BackgroundCheckInvitation,
    BackgroundCheckReport,
    UnrecognizedEvent,
]

STRIPE_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "account.updated",
        "transfer.created",
        "transfer.failed",
    }
)

CHECKR_EVENT_TYPES = frozenset(
    {
        "invitation.completed",
        "invitation.expired",
        "report.completed",
        "report.suspended",
        "report.pre_adverse_action",
        "report.post_adverse_action",
    }
)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def decode_event(provider: str, payload: Mapping[str, Any]) -> WebhookEventVariant:
    """Map a provider payload onto a typed variant; never raises on odd shapes."""
    external_id = str(payload.get("id", ""))
    event_type = str(payload.get("type", ""))
    obj = _as_dict(_as_dict(payload.get("data")).get("object"))
    base = dict(provider=provider, external_id=external_id, event_type=event_type, data=obj)

    if provider == STRIPE:
        if event_type.startswith("customer.subscription."):
            if event_type in STRIPE_EVENT_TYPES:
                return SubscriptionChanged(
                    **base,
                    subscription_id=_str_or_none(obj.get("id")),
                    customer_id=_str_or_none(obj.get("customer")),
                    status=_str_or_none(obj.get("status")),
                    metadata=_as_dict(obj.get("metadata")),
                )
        elif event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
            return InvoicePayment(
                **base,
                invoice_id=_str_or_none(obj.get("id")),
                customer_id=_str_or_none(obj.get("customer")),
                amount_paid=_as_int(obj.get("amount_paid")),
                succeeded=event_type == "invoice.payment_succeeded",
            )
        elif event_type == "account.updated":
            return ConnectAccountUpdated(
                **base,
                account_id=_str_or_none(obj.get("id")),
                charges_enabled=bool(obj.get("charges_enabled")),
                payouts_enabled=bool(obj.get("payouts_enabled")),
                details_submitted=bool(obj.get("details_submitted")),
                metadata=_as_dict(obj.get("metadata")),
            )
        elif event_type in ("transfer.created", "transfer.failed"):
            return TransferEvent(
                **base,
                transfer_id=_str_or_none(obj.get("id")),
                amount=_as_int(obj.get("amount")),
                failed=event_type == "transfer.failed",
            )
    elif provider == CHECKR:
        if event_type in ("invitation.completed", "invitation.expired"):
            return BackgroundCheckInvitation(
                **base,
                candidate_id=_str_or_none(obj.get("candidate_id")),
                report_id=_str_or_none(obj.get("report_id")),
                expired=event_type == "invitation.expired",
            )
        if event_type in CHECKR_EVENT_TYPES and event_type.startswith("report."):
            return BackgroundCheckReport(
                **base,
                report_id=_str_or_none(obj.get("id")),
                candidate_id=_str_or_none(obj.get("candidate_id")),
                status=_str_or_none(obj.get("status")),
                result=_str_or_none(obj.get("result")),
                assessment=_str_or_none(obj.get("assessment")),
            )
    return UnrecognizedEvent(**base)


# Ledger + dispatch


class EventLedger(Protocol):
    def record_webhook_event(self, event: WebhookEvent) -> Tuple[WebhookEvent, bool]: ...

    def claim_webhook_event(
        self, event_id: str, expected_status: EventStatus
    ) -> Optional[WebhookEvent]: ...

    def mark_webhook_processed(self, event_id: str) -> None: ...

    def mark_webhook_failed(self, event_id: str, error: str) -> None: ...

    def release_webhook_event(self, event_id: str) -> bool: ...

    def list_webhook_events(
        self,
        status: Optional[EventStatus] = None,
        *,
        provider: Optional[str] = None,
        limit: int = 100,
    ) -> List[WebhookEvent]: ...


@dataclass(frozen=True)
class VerifierBinding:
    verifier: WebhookVerifier
    secret: Optional[str]


@dataclass(frozen=True)
class WorkItem:
    event_id: str
    expected_status: EventStatus


@dataclass(frozen=True)
class IngestOutcome:
    event_id: str
    duplicate: bool
    enqueued: bool


Handler = Callable[[WebhookEventVariant], Union[Any, Awaitable[Any]]]

_RETRYABLE = (EventStatus.RECEIVED, EventStatus.FAILED)


def _contains_nul(value: Any) -> bool:
    if isinstance(value, str):
        return "\x00" in value
    if isinstance(value, dict):
        return any(_contains_nul(k) or _contains_nul(v) for k, v in value.items())
    if isinstance(value, list):
        return any(_contains_nul(v) for v in value)
    return False


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class EventDispatcher:
    """Dedupes signed webhooks and hands them to handlers off the request path."""

    def __init__(
        self,
        store: EventLedger,
        verifiers: Mapping[str, VerifierBinding],
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        worker_count: int = DEFAULT_WORKER_COUNT,
    ) -> None:
        self.store = store
        self.verifiers = dict(verifiers)
        self.queue_size = queue_size
        self.worker_count = max(1, worker_count)
        self._handlers: Dict[Tuple[str, str], Handler] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register(self, provider: str, event_type: str, handler: Handler) -> None:
        key = (provider, event_type)
        if key in self._handlers:
            logger.warning("webhook_handler_replaced", provider=provider, event_type=event_type)
        self._handlers[key] = handler

    async def ingest(
        self, provider: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> IngestOutcome:
        binding = self.verifiers.get(provider)
        if binding is None:
            raise ValidationFailure("unknown webhook provider", detail={"provider": provider})
        signature = _header(headers, binding.verifier.header_name)
        if not binding.verifier.verify(raw_body, signature, binding.secret):
            logger.warning(
                "webhook_signature_rejected",
                provider=provider,
                header_present=signature is not None,
            )
            raise SignatureFailure("invalid webhook signature")

        payload = self._parse(provider, raw_body)
        event = WebhookEvent.new(
            provider=provider,
            external_id=str(payload["id"]),
            event_type=str(payload["type"]),
            payload_hash=hashlib.sha256(raw_body).hexdigest(),
            payload=payload,
        )
        try:
            stored, created = await asyncio.to_thread(self.store.record_webhook_event, event)
        except UnstorableValue:
            raise ValidationFailure("webhook payload cannot be stored")
        if not created and stored.payload_hash != event.payload_hash:
            logger.warning(
                "webhook_payload_mismatch",
                provider=provider,
                external_id=stored.external_id,
                event_type=stored.event_type,
            )

        if stored.status not in _RETRYABLE:
            logger.info(
                "webhook_duplicate_ignored",
                provider=provider,
                external_id=stored.external_id,
                status=stored.status.value,
            )
            return IngestOutcome(event_id=stored.id, duplicate=True, enqueued=False)

        enqueued = self._enqueue(WorkItem(stored.id, stored.status), stored)
        logger.info(
            "webhook_received",
            provider=provider,
            external_id=stored.external_id,
            event_type=stored.event_type,
            duplicate=not created,
            enqueued=enqueued,
        )
        return IngestOutcome(event_id=stored.id, duplicate=not created, enqueued=enqueued)

    def _parse(self, provider: str, raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("webhook_payload_invalid_json", provider=provider)
            raise ValidationFailure("webhook payload is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationFailure("webhook payload must be a JSON object")
        missing = [
            key
            for key in ("id", "type")
            if not isinstance(payload.get(key), str) or not payload[key]
        ]
        if missing:
            logger.warning("webhook_payload_incomplete", provider=provider, missing=missing)
            raise ValidationFailure(
                "webhook payload missing required fields", detail={"missing": missing}
            )
        if _contains_nul(payload):
            logger.warning("webhook_payload_nul_character", provider=provider)
            raise ValidationFailure("webhook payload contains a NUL character")
        return payload

    def _enqueue(self, item: WorkItem, event: WebhookEvent) -> bool:
        if self._queue is None or not self._running:
            logger.warning(
                "webhook_dispatcher_not_running",
                provider=event.provider,
                external_id=event.external_id,
            )
            return False
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.error(
                "webhook_queue_full",
                provider=event.provider,
                external_id=event.external_id,
                event_type=event.event_type,
                queue_size=self.queue_size,
            )
            raise TransientFailure("webhook queue is full, retry later")
        return True

    async def start(self) -> None:
        if self._running:
            logger.warning("webhook_dispatcher_already_running")
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"webhook-worker-{index}")
            for index in range(self.worker_count)
        ]
        recovered = await self._recover_received()
        logger.info(
            "webhook_dispatcher_started",
            workers=self.worker_count,
            queue_size=self.queue_size,
            recovered=recovered,
        )

    async def _recover_received(self) -> int:
        # leave half the queue free for live deliveries
        limit = max(1, self.queue_size // 2)
        pending = await asyncio.to_thread(
            self.store.list_webhook_events, EventStatus.RECEIVED, limit=limit
        )
        recovered = 0
        for event in pending:
            try:
                self._queue.put_nowait(WorkItem(event.id, EventStatus.RECEIVED))
            except asyncio.QueueFull:
                logger.warning("webhook_recovery_truncated", recovered=recovered)
                break
            recovered += 1
        return recovered

    async def stop(self) -> None:
        self._running = False
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        logger.info("webhook_dispatcher_stopped")

    async def drain(self) -> None:
        """Wait until every queued item has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        queue = self._queue
        while True:
            item = await queue.get()
            try:
                await self._process(item)
            except Exception as exc:
                logger.error(
                    "webhook_worker_error",
                    worker=index,
                    event_id=item.event_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            finally:
                queue.task_done()

    async def _process(self, item: WorkItem) -> None:
        claim = asyncio.ensure_future(
            asyncio.to_thread(self.store.claim_webhook_event, item.event_id, item.expected_status)
        )
        try:
            event = await asyncio.shield(claim)
        except asyncio.CancelledError:
            # the claim still lands in its thread
            if await claim is not None:
                await self._release(item.event_id)
            raise
        if event is None:
            logger.debug("webhook_claim_lost", event_id=item.event_id)
            return

        variant = decode_event(event.provider, event.payload)
        handler = self._handlers.get((event.provider, event.event_type))
        if handler is None:
            await asyncio.to_thread(self.store.mark_webhook_processed, event.id)
            logger.info(
                "webhook_event_unhandled",
                provider=event.provider,
                external_id=event.external_id,
                event_type=event.event_type,
            )
            return

        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(variant)
            else:
                result = await asyncio.to_thread(handler, variant)
                if inspect.isawaitable(result):
                    result = await result
        except asyncio.CancelledError:
            await self._release(event.id)
            raise
        except Exception as exc:
            await self._fail(event, f"{type(exc).__name__}: {exc}")
            return
        if isinstance(result, Err):
            await self._fail(event, str(result.error))
            return

        await asyncio.to_thread(self.store.mark_webhook_processed, event.id)
        logger.info(
            "webhook_event_processed",
            provider=event.provider,
            external_id=event.external_id,
            event_type=event.event_type,
            attempts=event.attempts,
        )

    async def _release(self, event_id: str) -> None:
        released = await asyncio.to_thread(self.store.release_webhook_event, event_id)
        logger.warning("webhook_event_interrupted", event_id=event_id, released=released)

    async def _fail(self, event: WebhookEvent, error: str) -> None:
        await asyncio.to_thread(
            self.store.mark_webhook_failed, event.id, error[:MAX_ERROR_LENGTH]
        )
        logger.error(
            "webhook_event_failed",
            provider=event.provider,
            external_id=event.external_id,
            event_type=event.event_type,
            attempts=event.attempts,
            error=error,
        )

# Overview: Offline-sale reconciler; replays client-buffered sales through FEFO reserve+confirm.

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import OfflineSale
from ..errors import (
    StockError,
    NotFoundError,
    ValidationError,
    IntegrityFailureError,
    InsufficientStockError,
    StateConflictError,
    DuplicateSaleError,
)
from ..validation import coerce_int, coerce_positive_quantity
from ..time_utils import utcnow, to_utc_z, parse_iso_datetime
from .allocation_service import plan_allocation
from .concurrency import run_with_retry
from .reservation_service import reserve, confirm
"""
Offline Reconciliation Invariants (authoritative)

- Each envelope is its own transaction: all of its lines are consumed, or
  none are. A short line rolls back every reservation made for the envelope.
- Envelopes are isolated: one envelope's ERROR or CONFLICT never aborts the
  rest of the batch.
- Integrity and structure are checked before any stock is touched. ERROR
  outcomes are never recorded, so a corrected envelope can be resubmitted.
- sale_id is the idempotency key. SYNCED and RESOLVED records make a
  resubmission a DUPLICATE no-op; CONFLICT records are retried.
- Stock consumption and the SYNCED record commit together, so a crash
  between them cannot double-consume on retry.
"""

STATUS_SYNCED = "SYNCED"
STATUS_CONFLICT = "CONFLICT"
STATUS_RESOLVED = "RESOLVED"

FINAL_STATUSES = {STATUS_SYNCED, STATUS_RESOLVED}

# Fields covered by the integrity hash
ENVELOPE_FIELDS = ("sale_id", "items", "client_timestamp", "customer_id", "operator_id")
ITEM_FIELDS = ("product_id", "quantity", "unit_price_cents", "product_name")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EnvelopeItem:
    product_id: int
    quantity: int
    unit_price_cents: int
    product_name: str | None


@dataclass(frozen=True)
class OfflineSaleEnvelope:
    sale_id: str
    items: tuple[EnvelopeItem, ...]
    client_timestamp: datetime | None
    customer_id: Any
    operator_id: Any
    integrity_hash: str
    raw: dict = field(compare=False, repr=False)


def _item_content(item: dict) -> dict:
    """Item fields as a client sends them; a missing or null price means 0."""
    content = {key: item.get(key) for key in ITEM_FIELDS}
    if content["unit_price_cents"] is None:
        content["unit_price_cents"] = 0
    return content


def _canonical_content(raw: dict) -> dict:
    content = {key: raw.get(key) for key in ENVELOPE_FIELDS}
    content["items"] = [
        {key: item.get(key) for key in ITEM_FIELDS}
        for item in (raw.get("items") or [])
    ]
    return content


def compute_integrity_hash(raw: dict) -> str:
    """SHA-256 hex digest over the canonical JSON of the envelope contents."""
    encoded = json.dumps(
        _canonical_content(raw),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def parse_envelope(raw: Any) -> OfflineSaleEnvelope:
    """
    Structural validation, then integrity check.

    Raises ValidationError for a malformed envelope and IntegrityFailureError
    when the hash does not match the contents.
    """
    if not isinstance(raw, dict):
        raise ValidationError("envelope must be an object")

    sale_id = raw.get("sale_id")
    if not isinstance(sale_id, str) or not sale_id.strip():
        raise ValidationError("sale_id is required")
    if len(sale_id) > 64:
        raise ValidationError("sale_id cannot exceed 64 characters")

    items_raw = raw.get("items")
    if not isinstance(items_raw, list) or not items_raw:
        raise ValidationError("items must be a non-empty list", details={"sale_id": sale_id})

    items = []
    for idx, item in enumerate(items_raw):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{idx}] must be an object", details={"sale_id": sale_id})
        price = coerce_int(_item_content(item)["unit_price_cents"], f"items[{idx}].unit_price_cents")
        if price < 0:
            raise ValidationError(f"items[{idx}].unit_price_cents must be >= 0", details={"sale_id": sale_id})
        items.append(
            EnvelopeItem(
                product_id=coerce_int(item.get("product_id"), f"items[{idx}].product_id"),
                quantity=coerce_positive_quantity(item.get("quantity"), f"items[{idx}].quantity"),
                unit_price_cents=price,
                product_name=item.get("product_name"),
            )
        )

    try:
        client_ts = parse_iso_datetime(raw.get("client_timestamp"))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError("client_timestamp must be an ISO-8601 datetime", details={"sale_id": sale_id})

    provided = raw.get("integrity_hash")
    if not isinstance(provided, str) or not provided:
        raise ValidationError("integrity_hash is required", details={"sale_id": sale_id})

    expected = compute_integrity_hash(raw)
    if not hmac.compare_digest(provided.lower(), expected):
        raise IntegrityFailureError(
            "Integrity hash does not match envelope contents",
            details={"sale_id": sale_id},
        )

    return OfflineSaleEnvelope(
        sale_id=sale_id,
        items=tuple(items),
        client_timestamp=client_ts,
        customer_id=raw.get("customer_id"),
        operator_id=raw.get("operator_id"),
        integrity_hash=expected,
        raw=raw,
    )


def build_envelope(
    items: list[dict],
    *,
    operator_id: Any,
    customer_id: Any = None,
    sale_id: str | None = None,
    client_timestamp: str | None = None,
) -> dict:
    """Produce a correctly hashed envelope, as a disconnected client would."""
    envelope = {
        "sale_id": sale_id or str(uuid.uuid4()),
        "items": [_item_content(item) for item in items],
        "client_timestamp": client_timestamp or to_utc_z(utcnow()),
        "customer_id": customer_id,
        "operator_id": operator_id,
    }
    envelope["integrity_hash"] = compute_integrity_hash(envelope)
    return envelope


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncSuccess:
    status: ClassVar[str] = "SUCCESS"
    sale_id: str
    consumed: tuple[dict, ...]

    def to_dict(self) -> dict:
        return {"status": self.status, "sale_id": self.sale_id, "consumed": list(self.consumed)}


@dataclass(frozen=True)
class SyncConflict:
    status: ClassVar[str] = "CONFLICT"
    sale_id: str
    unmet: tuple[dict, ...]
    attempts: int

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "sale_id": self.sale_id,
            "unmet": list(self.unmet),
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class SyncDuplicate:
    status: ClassVar[str] = "DUPLICATE"
    sale_id: str
    previous_status: str

    def to_dict(self) -> dict:
        return {"status": self.status, "sale_id": self.sale_id, "previous_status": self.previous_status}


@dataclass(frozen=True)
class SyncError:
    status: ClassVar[str] = "ERROR"
    sale_id: str | None
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"status": self.status, "sale_id": self.sale_id, "code": self.code, "message": self.message}


SyncOutcome = SyncSuccess | SyncConflict | SyncDuplicate | SyncError


@dataclass
class SyncReport:
    outcomes: list = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def success(self) -> int:
        return self._count(SyncSuccess.status)

    @property
    def conflict(self) -> int:
        return self._count(SyncConflict.status)

    @property
    def duplicate(self) -> int:
        return self._count(SyncDuplicate.status)

    @property
    def error(self) -> int:
        return self._count(SyncError.status)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "success": self.success,
            "conflict": self.conflict,
            "duplicate": self.duplicate,
            "error": self.error,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def _record(envelope: OfflineSaleEnvelope, *, status: str, detail: dict | None, actor: str) -> OfflineSale:
    now = utcnow()
    record = db.session.query(OfflineSale).filter_by(sale_id=envelope.sale_id).first()
    if record is None:
        record = OfflineSale(
            sale_id=envelope.sale_id,
            first_seen_at=now,
            attempts=0,
        )
        db.session.add(record)
    record.status = status
    record.integrity_hash = envelope.integrity_hash
    record.payload = envelope.raw
    record.detail = detail
    record.client_timestamp = envelope.client_timestamp
    record.submitted_by = actor
    record.attempts = (record.attempts or 0) + 1
    record.processed_at = now
    return record


def _replay(envelope: OfflineSaleEnvelope, actor: str) -> SyncOutcome:
    existing = db.session.query(OfflineSale).filter_by(sale_id=envelope.sale_id).first()
    if existing is not None and existing.status in FINAL_STATUSES:
        return SyncDuplicate(sale_id=envelope.sale_id, previous_status=existing.status)

    consumed: list[dict] = []
    unmet: list[dict] = []
    try:
        for item in envelope.items:
            plan = plan_allocation(item.product_id, item.quantity)
            if not plan.is_satisfied:
                unmet.append({
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "requested_quantity": item.quantity,
                    "available_quantity": plan.allocated_quantity,
                    "unmet_quantity": plan.unmet_quantity,
                })
                break
            for line in plan.lines:
                reserve(line.lot_id, line.quantity, actor=actor, sale_ref=envelope.sale_id, commit=False)
                confirm(line.lot_id, line.quantity, sale_ref=envelope.sale_id, actor=actor, commit=False)
                consumed.append({"product_id": item.product_id, "lot_id": line.lot_id, "quantity": line.quantity})
    except InsufficientStockError as exc:
        # A concurrent writer drained a planned lot between plan and reserve
        unmet.append({"product_id": item.product_id, "product_name": item.product_name, **exc.details})
    except NotFoundError as exc:
        db.session.rollback()
        return SyncError(sale_id=envelope.sale_id, code=exc.code, message=exc.message)

    if unmet:
        db.session.rollback()
        record = _record(envelope, status=STATUS_CONFLICT, detail={"unmet": unmet}, actor=actor)
        db.session.commit()
        return SyncConflict(sale_id=envelope.sale_id, unmet=tuple(unmet), attempts=record.attempts)

    _record(envelope, status=STATUS_SYNCED, detail={"consumed": consumed}, actor=actor)
    db.session.commit()
    return SyncSuccess(sale_id=envelope.sale_id, consumed=tuple(consumed))


def _reconcile(envelope: OfflineSaleEnvelope, actor: str) -> SyncOutcome:
    try:
        return run_with_retry(lambda: _replay(envelope, actor))
    except IntegrityError:
        # Another batch recorded the same sale_id first; its commit won
        db.session.rollback()
        existing = db.session.query(OfflineSale).filter_by(sale_id=envelope.sale_id).first()
        if existing is not None and existing.status in FINAL_STATUSES:
            return SyncDuplicate(sale_id=envelope.sale_id, previous_status=existing.status)
        return SyncError(
            sale_id=envelope.sale_id,
            code=StateConflictError.code,
            message="Sale is being reconciled concurrently; resubmit",
        )


def _process_envelope(raw: Any, actor: str) -> SyncOutcome:
    try:
        envelope = parse_envelope(raw)
    except StockError as exc:
        sale_id = raw.get("sale_id") if isinstance(raw, dict) else None
        return SyncError(sale_id=sale_id if isinstance(sale_id, str) else None, code=exc.code, message=exc.message)
    return _reconcile(envelope, actor)


_REPLAY_ERRORS = {
    NotFoundError.code: NotFoundError,
    StateConflictError.code: StateConflictError,
}


def sync_offline_sale(raw: Any, *, actor: str) -> SyncSuccess | SyncConflict:
    """
    Replay one envelope and raise instead of returning ERROR or DUPLICATE.

    Raises ValidationError / IntegrityFailureError for a bad envelope and
    DuplicateSaleError when the sale_id was already synced or resolved.
    CONFLICT is still an outcome: the sale is recorded and can be retried.
    """
    envelope = parse_envelope(raw)
    outcome = _reconcile(envelope, actor)
    if isinstance(outcome, SyncDuplicate):
        raise DuplicateSaleError(
            "Offline sale was already processed",
            details={"sale_id": outcome.sale_id, "previous_status": outcome.previous_status},
        )
    if isinstance(outcome, SyncError):
        raise _REPLAY_ERRORS.get(outcome.code, StockError)(outcome.message, details={"sale_id": outcome.sale_id})
    current_app.logger.info("Offline sale %s replayed by %s: %s", envelope.sale_id, actor, outcome.status)
    return outcome


def sync_offline_sales(envelopes: Any, *, actor: str) -> SyncReport:
    """Replay a batch of envelopes in order. An empty batch is a no-op."""
    if not isinstance(envelopes, list):
        raise ValidationError("sales must be a list of envelopes")

    report = SyncReport()
    for raw in envelopes:
        report.outcomes.append(_process_envelope(raw, actor))

    if report.processed:
        current_app.logger.info(
            "Offline sync by %s: processed=%d success=%d conflict=%d duplicate=%d error=%d",
            actor, report.processed, report.success, report.conflict, report.duplicate, report.error,
        )
    return report


def list_pending() -> list[OfflineSale]:
    """Conflicted sales still waiting for stock or an operator decision."""
    return (
        db.session.query(OfflineSale)
        .filter(OfflineSale.status == STATUS_CONFLICT)
        .order_by(OfflineSale.first_seen_at.asc(), OfflineSale.id.asc())
        .all()
    )


def get_offline_sale(sale_id: str) -> OfflineSale:
    record = db.session.query(OfflineSale).filter_by(sale_id=sale_id).first()
    if record is None:
        raise NotFoundError("Offline sale not found", details={"sale_id": sale_id})
    return record


def mark_processed(sale_id: str, *, actor: str) -> OfflineSale:
    """Operator closes a conflicted sale; later resubmissions become DUPLICATE."""
    def _op():
        record = get_offline_sale(sale_id)
        if record.status != STATUS_CONFLICT:
            raise StateConflictError(
                f"Offline sale is already {record.status}",
                details={"sale_id": sale_id, "status": record.status},
            )
        record.status = STATUS_RESOLVED
        record.resolved_by = actor
        record.resolved_at = utcnow()
        db.session.commit()
        current_app.logger.info("Offline sale %s marked processed by %s", sale_id, actor)
        return record

    return run_with_retry(_op)

# Overview: Append-only movement ledger for lots; writes and audit queries.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Lot, LotMovement, MovementKind, MOVEMENT_SHAPES
from ..errors import NotFoundError, ValidationError
from ..time_utils import utcnow
"""
Lot Ledger Invariants (authoritative)

- Every quantity change on a Lot has exactly one LotMovement, written in the
  same DB transaction as the change (append_movement only flushes).
- The ledger is append-only: no update/delete API exists here and the model
  refuses ORM updates/deletes.
- SUM(current_delta) over a lot's movements == lot.current_quantity.
- SUM(reserved_delta) over a lot's movements == lot.reserved_quantity.
"""


def append_movement(
    *,
    lot: Lot,
    kind: MovementKind,
    quantity: int,
    actor: str,
    current_delta: int = 0,
    reserved_delta: int = 0,
    reason: str | None = None,
    sale_ref: str | None = None,
    occurred_at: datetime | None = None,
) -> LotMovement:
    """
    Append one ledger row for a change already applied to `lot`.

    `lot` must hold the post-change quantities (they are snapshotted into
    current_after / reserved_after). Deltas must match the kind's shape.
    """
    kind = MovementKind(kind)
    if quantity <= 0:
        raise ValidationError("movement quantity must be > 0")
    if not actor:
        raise ValidationError("actor is required for ledger movements")

    current_sign, reserved_sign = MOVEMENT_SHAPES[kind]
    if current_sign is None:
        if abs(current_delta) != quantity:
            raise ValidationError(f"{kind.value} current_delta must be +/-quantity")
    elif current_delta != current_sign * quantity:
        raise ValidationError(f"{kind.value} current_delta must be {current_sign * quantity}")
    if reserved_delta != reserved_sign * quantity:
        raise ValidationError(f"{kind.value} reserved_delta must be {reserved_sign * quantity}")

    movement = LotMovement(
        lot_id=lot.id,
        product_id=lot.product_id,
        kind=kind.value,
        quantity=quantity,
        current_delta=current_delta,
        reserved_delta=reserved_delta,
        current_after=lot.current_quantity,
        reserved_after=lot.reserved_quantity,
        reason=reason,
        actor=actor,
        sale_ref=sale_ref,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def list_movements(
    *,
    lot_id: int | None = None,
    sale_ref: str | None = None,
    kind: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 200,
) -> list[LotMovement]:
    """
    Query the ledger. Filters combine with AND; date range is inclusive.
    Newest first.
    """
    q = db.session.query(LotMovement)
    if lot_id is not None:
        q = q.filter(LotMovement.lot_id == lot_id)
    if sale_ref is not None:
        q = q.filter(LotMovement.sale_ref == sale_ref)
    if kind is not None:
        try:
            kind_value = MovementKind(kind.upper()).value
        except ValueError:
            raise ValidationError(f"unknown movement kind: {kind}")
        q = q.filter(LotMovement.kind == kind_value)
    if start is not None:
        q = q.filter(LotMovement.occurred_at >= start)
    if end is not None:
        q = q.filter(LotMovement.occurred_at <= end)
    if start is not None and end is not None and start > end:
        raise ValidationError("start must be <= end")

    return q.order_by(LotMovement.occurred_at.desc(), LotMovement.id.desc()).limit(limit).all()


def list_movements_for_lot(lot_id: int, *, limit: int = 200) -> list[LotMovement]:
    if db.session.get(Lot, lot_id) is None:
        raise NotFoundError("Lot not found", details={"lot_id": lot_id})
    return list_movements(lot_id=lot_id, limit=limit)


def list_movements_for_sale(sale_ref: str) -> list[LotMovement]:
    return list_movements(sale_ref=sale_ref, limit=10_000)


@dataclass(frozen=True)
class LedgerBalance:
    lot_id: int
    ledger_current: int
    ledger_reserved: int
    stored_current: int
    stored_reserved: int
    movement_count: int

    @property
    def ledger_available(self) -> int:
        return self.ledger_current - self.ledger_reserved

    @property
    def consistent(self) -> bool:
        return (
            self.ledger_current == self.stored_current
            and self.ledger_reserved == self.stored_reserved
        )

    def to_dict(self) -> dict:
        return {
            "lot_id": self.lot_id,
            "ledger_current": self.ledger_current,
            "ledger_reserved": self.ledger_reserved,
            "ledger_available": self.ledger_available,
            "stored_current": self.stored_current,
            "stored_reserved": self.stored_reserved,
            "stored_available": self.stored_current - self.stored_reserved,
            "movement_count": self.movement_count,
            "consistent": self.consistent,
        }


def lot_balance(lot_id: int) -> LedgerBalance:
    """Reconstruct a lot's quantities from its movements and compare to the row."""
    lot = db.session.query(Lot).populate_existing().filter_by(id=lot_id).first()
    if lot is None:
        raise NotFoundError("Lot not found", details={"lot_id": lot_id})

    row = db.session.query(
        func.coalesce(func.sum(LotMovement.current_delta), 0).label("current"),
        func.coalesce(func.sum(LotMovement.reserved_delta), 0).label("reserved"),
        func.count(LotMovement.id).label("count"),
    ).filter(LotMovement.lot_id == lot_id).one()

    return LedgerBalance(
        lot_id=lot_id,
        ledger_current=int(row.current or 0),
        ledger_reserved=int(row.reserved or 0),
        stored_current=lot.current_quantity,
        stored_reserved=lot.reserved_quantity,
        movement_count=int(row.count or 0),
    )


def lot_history(lot_id: int) -> dict:
    """Balance plus the running quantity timeline, oldest first."""
    balance = lot_balance(lot_id)
    movements = (
        db.session.query(LotMovement)
        .filter(LotMovement.lot_id == lot_id)
        .order_by(LotMovement.occurred_at.asc(), LotMovement.id.asc())
        .all()
    )
    return {
        "balance": balance.to_dict(),
        "timeline": [m.to_dict() for m in movements],
    }


def find_inconsistent_lots() -> list[LedgerBalance]:
    """Every lot whose stored quantities disagree with its ledger."""
    ids = [row.id for row in db.session.query(Lot.id).order_by(Lot.id).all()]
    return [b for b in (lot_balance(lot_id) for lot_id in ids) if not b.consistent]

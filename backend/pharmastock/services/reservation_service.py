# Overview: Reservation/consumption protocol for lots; every change is a conditional update plus a ledger row.

"""
Lot Reservation Protocol (authoritative)

Per-lot state machine, in quantities:
    AVAILABLE --reserve--> RESERVED --confirm--> CONSUMED
    RESERVED  --release--> AVAILABLE
    AVAILABLE/RESERVED --adjust--> AVAILABLE

CONCURRENCY:
- Every quantity change is ONE conditional UPDATE whose WHERE clause carries
  the guard (e.g. current - reserved >= qty). Two concurrent reserves on the
  same lot cannot both pass the guard. Nothing here reads a quantity and then
  writes a value computed from that read without re-checking it in the
  UPDATE's WHERE clause (compare-and-set).
- The ledger row is appended in the same transaction as the UPDATE.
- Different lots never contend with each other.

COMPOSITION:
- Single-lot operations commit by default. Pass commit=False to compose them
  inside a caller-owned transaction (fulfillment confirm, offline replay).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import case, func, select

from ..extensions import db
from ..models import Lot, LotMovement, MovementKind
from ..errors import (
    NotFoundError,
    ValidationError,
    InsufficientStockError,
    StateConflictError,
    StockError,
)
from ..time_utils import today
from .concurrency import conditional_update, fetch_fresh, lock_for_update, run_with_retry
from .ledger_service import append_movement
from .allocation_service import AllocationLine, AllocationPlan, plan_allocation

# Compare-and-set rounds before giving up on a hot lot
CAS_ATTEMPTS = 5


@dataclass(frozen=True)
class StockChange:
    """Result of one lot operation: the refreshed lot and its ledger row (if any)."""
    lot: Lot
    movement: LotMovement | None
    quantity: int

    def to_dict(self) -> dict:
        return {
            "lot": self.lot.to_dict(),
            "movement": self.movement.to_dict() if self.movement else None,
            "quantity": self.quantity,
        }


def _require_qty(quantity: int, field: str = "quantity") -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError(f"{field} must be a positive integer")


def _load(lot_id: int, *, require_active: bool = False) -> Lot:
    lot = fetch_fresh(Lot, lot_id)
    if lot is None:
        raise NotFoundError("Lot not found", details={"lot_id": lot_id})
    if require_active and not lot.is_active:
        raise NotFoundError("Lot is inactive", details={"lot_id": lot_id})
    return lot


def _finish(func_, commit: bool):
    if not commit:
        return func_()

    def _op():
        try:
            result = func_()
        except StockError:
            db.session.rollback()
            raise
        db.session.commit()
        return result

    return run_with_retry(_op)


def _bump():
    return {"version_id": Lot.version_id + 1}


def reserve(
    lot_id: int,
    quantity: int,
    *,
    actor: str,
    sale_ref: str | None = None,
    reason: str | None = None,
    commit: bool = True,
) -> StockChange:
    """Earmark quantity on an active lot. Fails with no mutation if not available."""
    _require_qty(quantity)

    def _inner():
        changed = conditional_update(
            Lot,
            where=[
                Lot.id == lot_id,
                Lot.is_active.is_(True),
                Lot.current_quantity - Lot.reserved_quantity >= quantity,
            ],
            values={"reserved_quantity": Lot.reserved_quantity + quantity, **_bump()},
        )
        if not changed:
            lot = _load(lot_id, require_active=True)
            raise InsufficientStockError(
                f"Insufficient available quantity in lot {lot.lot_number}",
                details={
                    "lot_id": lot_id,
                    "requested": quantity,
                    "available": lot.available_quantity,
                },
            )

        lot = _load(lot_id)
        movement = append_movement(
            lot=lot,
            kind=MovementKind.RESERVE,
            quantity=quantity,
            reserved_delta=quantity,
            actor=actor,
            sale_ref=sale_ref,
            reason=reason or "Reserved",
        )
        return StockChange(lot=lot, movement=movement, quantity=quantity)

    return _finish(_inner, commit)


def release(
    lot_id: int,
    quantity: int,
    *,
    actor: str,
    sale_ref: str | None = None,
    reason: str | None = None,
    commit: bool = True,
) -> StockChange:
    """
    Return reserved units to available, clamped to what is actually reserved.

    Releasing more than is reserved (e.g. a retried release) releases only
    the remainder; releasing from a lot with nothing reserved is a no-op with
    no ledger row.
    """
    _require_qty(quantity)

    def _inner():
        for _ in range(CAS_ATTEMPTS):
            lot = _load(lot_id)
            observed = lot.reserved_quantity
            amount = min(quantity, observed)
            if amount == 0:
                return StockChange(lot=lot, movement=None, quantity=0)

            changed = conditional_update(
                Lot,
                where=[Lot.id == lot_id, Lot.reserved_quantity == observed],
                values={"reserved_quantity": observed - amount, **_bump()},
            )
            if changed:
                lot = _load(lot_id)
                movement = append_movement(
                    lot=lot,
                    kind=MovementKind.RELEASE,
                    quantity=amount,
                    reserved_delta=-amount,
                    actor=actor,
                    sale_ref=sale_ref,
                    reason=reason or "Reservation released",
                )
                return StockChange(lot=lot, movement=movement, quantity=amount)

        raise StateConflictError(
            "Lot is being modified concurrently; retry the release",
            details={"lot_id": lot_id},
        )

    return _finish(_inner, commit)


def confirm(
    lot_id: int,
    quantity: int,
    *,
    sale_ref: str,
    actor: str,
    reason: str | None = None,
    commit: bool = True,
) -> StockChange:
    """Consume previously reserved units. The only path that permanently reduces stock for a sale."""
    _require_qty(quantity)
    if not sale_ref or not str(sale_ref).strip():
        raise ValidationError("sale_ref is required to confirm consumption")

    def _inner():
        changed = conditional_update(
            Lot,
            where=[
                Lot.id == lot_id,
                Lot.reserved_quantity >= quantity,
                Lot.current_quantity >= quantity,
            ],
            values={
                "current_quantity": Lot.current_quantity - quantity,
                "reserved_quantity": Lot.reserved_quantity - quantity,
                **_bump(),
            },
        )
        if not changed:
            lot = _load(lot_id)
            raise InsufficientStockError(
                f"Reserved quantity in lot {lot.lot_number} is insufficient to confirm",
                details={
                    "lot_id": lot_id,
                    "requested": quantity,
                    "reserved": lot.reserved_quantity,
                },
            )

        lot = _load(lot_id)
        movement = append_movement(
            lot=lot,
            kind=MovementKind.CONSUME,
            quantity=quantity,
            current_delta=-quantity,
            reserved_delta=-quantity,
            actor=actor,
            sale_ref=sale_ref,
            reason=reason or f"Sale {sale_ref}",
        )
        return StockChange(lot=lot, movement=movement, quantity=quantity)

    return _finish(_inner, commit)


def adjust(
    lot_id: int,
    new_quantity: int,
    *,
    reason: str,
    actor: str,
    commit: bool = True,
) -> StockChange:
    """
    Administrative correction to an absolute quantity.

    The delta is computed against the observed current_quantity and applied
    with compare-and-set, so a concurrent change forces a re-read.
    """
    if not isinstance(new_quantity, int) or isinstance(new_quantity, bool) or new_quantity < 0:
        raise ValidationError("new_quantity must be an integer >= 0")
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("reason is required for adjustments")

    def _inner():
        for _ in range(CAS_ATTEMPTS):
            lot = _load(lot_id, require_active=True)
            if new_quantity > lot.initial_quantity:
                raise ValidationError(
                    "new_quantity cannot exceed the lot's initial quantity",
                    details={"initial_quantity": lot.initial_quantity, "new_quantity": new_quantity},
                )
            if new_quantity < lot.reserved_quantity:
                raise StateConflictError(
                    "Adjustment would leave less stock than is reserved",
                    details={"reserved_quantity": lot.reserved_quantity, "new_quantity": new_quantity},
                )
            observed = lot.current_quantity
            delta = new_quantity - observed
            if delta == 0:
                raise ValidationError("new_quantity equals current quantity; nothing to adjust")

            changed = conditional_update(
                Lot,
                where=[
                    Lot.id == lot_id,
                    Lot.is_active.is_(True),
                    Lot.current_quantity == observed,
                    Lot.reserved_quantity <= new_quantity,
                ],
                values={"current_quantity": new_quantity, **_bump()},
            )
            if changed:
                lot = _load(lot_id)
                movement = append_movement(
                    lot=lot,
                    kind=MovementKind.ADJUST,
                    quantity=abs(delta),
                    current_delta=delta,
                    actor=actor,
                    reason=reason.strip(),
                )
                return StockChange(lot=lot, movement=movement, quantity=delta)

        raise StateConflictError(
            "Lot is being modified concurrently; retry the adjustment",
            details={"lot_id": lot_id},
        )

    return _finish(_inner, commit)


def expire_lot(
    lot_id: int,
    *,
    actor: str,
    reason: str | None = None,
    commit: bool = True,
) -> StockChange:
    """Write off the unreserved remainder of an expired lot (EXPIRE movement)."""
    def _inner():
        for _ in range(CAS_ATTEMPTS):
            lot = _load(lot_id, require_active=True)
            if lot.expiration_date >= today():
                raise StateConflictError(
                    "Lot has not expired yet",
                    details={"lot_id": lot_id, "expiration_date": lot.expiration_date.isoformat()},
                )
            amount = lot.available_quantity
            if amount <= 0:
                raise StateConflictError(
                    "Lot has no unreserved stock to write off",
                    details={"lot_id": lot_id},
                )

            changed = conditional_update(
                Lot,
                where=[
                    Lot.id == lot_id,
                    Lot.current_quantity == lot.current_quantity,
                    Lot.reserved_quantity == lot.reserved_quantity,
                ],
                values={"current_quantity": Lot.current_quantity - amount, **_bump()},
            )
            if changed:
                lot = _load(lot_id)
                movement = append_movement(
                    lot=lot,
                    kind=MovementKind.EXPIRE,
                    quantity=amount,
                    current_delta=-amount,
                    actor=actor,
                    reason=reason or "Expired stock written off",
                )
                return StockChange(lot=lot, movement=movement, quantity=amount)

        raise StateConflictError(
            "Lot is being modified concurrently; retry the write-off",
            details={"lot_id": lot_id},
        )

    return _finish(_inner, commit)


def _returnable_query(lot_id: int, sale_ref: str):
    """SUM(CONSUME) - SUM(RETURN) for one sale on one lot."""
    return select(
        func.coalesce(
            func.sum(
                case(
                    (LotMovement.kind == MovementKind.CONSUME.value, LotMovement.quantity),
                    (LotMovement.kind == MovementKind.RETURN.value, -LotMovement.quantity),
                    else_=0,
                )
            ),
            0,
        )
    ).where(LotMovement.lot_id == lot_id, LotMovement.sale_ref == sale_ref)


def _returnable_for_sale(lot_id: int, sale_ref: str) -> int:
    return int(db.session.execute(_returnable_query(lot_id, sale_ref)).scalar() or 0)


def return_to_lot(
    lot_id: int,
    quantity: int,
    *,
    actor: str,
    sale_ref: str | None = None,
    reason: str | None = None,
    commit: bool = True,
) -> StockChange:
    """
    Put returned units back into a lot.

    Bounded by initial_quantity; when sale_ref is given, also bounded by what
    that sale consumed from this lot minus earlier returns. Both bounds are
    part of the UPDATE itself, so concurrent returns for one sale cannot
    together exceed what it consumed.
    """
    _require_qty(quantity)

    def _inner():
        where = [
            Lot.id == lot_id,
            Lot.is_active.is_(True),
            Lot.current_quantity + quantity <= Lot.initial_quantity,
        ]
        if sale_ref:
            # Row lock serializes returns where the backend honors FOR UPDATE
            lock_for_update(db.session.query(Lot.id).filter(Lot.id == lot_id)).first()
            where.append(_returnable_query(lot_id, sale_ref).scalar_subquery() >= quantity)

        changed = conditional_update(
            Lot,
            where=where,
            values={"current_quantity": Lot.current_quantity + quantity, **_bump()},
        )
        if not changed:
            lot = _load(lot_id, require_active=True)
            if sale_ref:
                returnable = _returnable_for_sale(lot_id, sale_ref)
                if quantity > returnable:
                    raise ValidationError(
                        "Return exceeds what the sale consumed from this lot",
                        details={"lot_id": lot_id, "sale_ref": sale_ref, "returnable": returnable},
                    )
            raise ValidationError(
                "Return would exceed the lot's initial quantity",
                details={
                    "lot_id": lot_id,
                    "current_quantity": lot.current_quantity,
                    "initial_quantity": lot.initial_quantity,
                },
            )

        lot = _load(lot_id)
        movement = append_movement(
            lot=lot,
            kind=MovementKind.RETURN,
            quantity=quantity,
            current_delta=quantity,
            actor=actor,
            sale_ref=sale_ref,
            reason=reason or "Customer return",
        )
        return StockChange(lot=lot, movement=movement, quantity=quantity)

    return _finish(_inner, commit)


# ---------------------------------------------------------------------------
# Sale fulfillment: plan + reserve every line, then confirm or release
# ---------------------------------------------------------------------------

def reserve_for_sale(product_id: int, quantity: int, *, sale_ref: str, actor: str) -> AllocationPlan:
    """
    FEFO-plan `quantity` of a product and reserve every plan line.

    If the plan is short, or any reserve fails (another caller got there
    first), every reservation made in this attempt is released before the
    error propagates. No partial reservation survives a failed attempt.
    """
    _require_qty(quantity)
    plan = plan_allocation(product_id, quantity)
    if not plan.is_satisfied:
        raise InsufficientStockError(
            "Insufficient stock to fulfil the requested quantity",
            details=plan.to_dict(),
        )

    reserved: list[AllocationLine] = []
    try:
        for line in plan.lines:
            reserve(line.lot_id, line.quantity, actor=actor, sale_ref=sale_ref)
            reserved.append(line)
    except StockError:
        db.session.rollback()
        release_reservations(
            reserved,
            sale_ref=sale_ref,
            actor=actor,
            reason=f"Rollback of failed reservation for {sale_ref}",
        )
        raise

    return plan


def confirm_reservations(lines: Iterable[AllocationLine], *, sale_ref: str, actor: str) -> list[StockChange]:
    """Confirm all lines of a reserved plan in one transaction (all or nothing)."""
    lines = list(lines)

    def _op():
        try:
            changes = [
                confirm(line.lot_id, line.quantity, sale_ref=sale_ref, actor=actor, commit=False)
                for line in lines
            ]
        except StockError:
            db.session.rollback()
            raise
        db.session.commit()
        return changes

    return run_with_retry(_op)


def release_reservations(
    lines: Iterable[AllocationLine],
    *,
    sale_ref: str | None,
    actor: str,
    reason: str | None = None,
) -> list[StockChange]:
    """Release all lines of a reserved plan in one transaction (cancellation path)."""
    lines = list(lines)

    def _op():
        changes = [
            release(line.lot_id, line.quantity, actor=actor, sale_ref=sale_ref, reason=reason, commit=False)
            for line in lines
        ]
        db.session.commit()
        return changes

    return run_with_retry(_op)

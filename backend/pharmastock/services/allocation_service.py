# Overview: FEFO allocation engine; pure planning over lot snapshots.

"""
FEFO (First-Expired-First-Out) allocation.

allocate_fefo() is a pure function: given lot-like objects (anything with
id, available_quantity, expiration_date, manufacture_date) and a requested
quantity it returns an AllocationPlan. It never touches the database.

plan_allocation() fetches the candidate lots for a product and delegates to
allocate_fefo(). Neither function mutates stock; callers reserve/confirm the
plan through reservation_service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Lot
from ..errors import ValidationError
from ..time_utils import today
from .catalog_service import get_product


@dataclass(frozen=True)
class AllocationLine:
    lot_id: int
    quantity: int

    def to_dict(self) -> dict:
        return {"lot_id": self.lot_id, "quantity": self.quantity}


@dataclass(frozen=True)
class AllocationPlan:
    product_id: int
    requested_quantity: int
    lines: tuple[AllocationLine, ...] = field(default_factory=tuple)
    unmet_quantity: int = 0

    @property
    def allocated_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_satisfied(self) -> bool:
        return self.unmet_quantity == 0

    def as_pairs(self) -> list[tuple[int, int]]:
        return [(line.lot_id, line.quantity) for line in self.lines]

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "requested_quantity": self.requested_quantity,
            "allocated_quantity": self.allocated_quantity,
            "unmet_quantity": self.unmet_quantity,
            "is_satisfied": self.is_satisfied,
            "lines": [line.to_dict() for line in self.lines],
        }


def fefo_sort_key(lot) -> tuple:
    return (lot.expiration_date, lot.manufacture_date, lot.id)


def allocate_fefo(lots: Iterable, requested_quantity: int, *, product_id: int | None = None) -> AllocationPlan:
    """Greedy FEFO split of requested_quantity across lots."""
    if requested_quantity <= 0:
        raise ValidationError("requested quantity must be > 0")

    candidates = sorted(
        (lot for lot in lots if lot.available_quantity > 0),
        key=fefo_sort_key,
    )

    remaining = requested_quantity
    lines: list[AllocationLine] = []
    for lot in candidates:
        if remaining <= 0:
            break
        take = min(lot.available_quantity, remaining)
        lines.append(AllocationLine(lot_id=lot.id, quantity=take))
        remaining -= take

    if product_id is None and candidates:
        product_id = candidates[0].product_id

    return AllocationPlan(
        product_id=product_id,
        requested_quantity=requested_quantity,
        lines=tuple(lines),
        unmet_quantity=max(0, remaining),
    )


def candidate_lots(product_id: int, *, as_of: date | None = None, exclude_expired: bool | None = None) -> list[Lot]:
    """Active lots of the product with available stock, read fresh from the session."""
    if exclude_expired is None:
        exclude_expired = current_app.config.get("ALLOCATION_EXCLUDE_EXPIRED", True)

    q = (
        db.session.query(Lot)
        .populate_existing()
        .filter(
            Lot.product_id == product_id,
            Lot.is_active.is_(True),
            Lot.current_quantity - Lot.reserved_quantity > 0,
        )
    )
    if exclude_expired:
        q = q.filter(Lot.expiration_date >= (as_of or today()))
    return q.all()


def plan_allocation(
    product_id: int,
    requested_quantity: int,
    *,
    as_of: date | None = None,
    exclude_expired: bool | None = None,
) -> AllocationPlan:
    get_product(product_id)
    lots = candidate_lots(product_id, as_of=as_of, exclude_expired=exclude_expired)
    return allocate_fefo(lots, requested_quantity, product_id=product_id)

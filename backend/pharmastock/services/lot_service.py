# Overview: Service-layer operations for lots; persistence and lifecycle of lot records.

from __future__ import annotations

from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Lot, LotStatus, MovementKind
from ..errors import NotFoundError, ConflictError, ValidationError, StateConflictError
from ..time_utils import today
from ..validation import enforce_rules_lot
from .catalog_service import get_product
from .concurrency import run_with_retry, fetch_fresh
from .ledger_service import append_movement
"""
Lot Store Invariants (authoritative)

- (product_id, lot_number) is unique; lot_barcode is unique when present.
- Creation writes the lot and its ENTRY movement in one transaction.
- update_lot() only touches descriptive fields; quantities are owned by
  reservation_service.
- Lots are never deleted. deactivate_lot() sets is_active=False, which is
  terminal: inactive lots cannot be updated, deactivated again, or allocated.
"""

MUTABLE_FIELDS = {
    "lot_number",
    "lot_barcode",
    "manufacture_date",
    "expiration_date",
    "unit_cost_cents",
    "supplier_id",
    "notes",
}

REQUIRED_ON_CREATE = {"product_id", "lot_number", "manufacture_date", "expiration_date", "initial_quantity"}

QUANTITY_FIELDS = {"initial_quantity", "current_quantity", "reserved_quantity"}

SORTABLE_FIELDS = {
    "expiration_date": Lot.expiration_date,
    "manufacture_date": Lot.manufacture_date,
    "lot_number": Lot.lot_number,
    "created_at": Lot.created_at,
    "current_quantity": Lot.current_quantity,
}


def fefo_order():
    """Expiration asc, then manufacture asc (older stock first), then id for determinism."""
    return (Lot.expiration_date.asc(), Lot.manufacture_date.asc(), Lot.id.asc())


def _ensure_unique(product_id: int, lot_number: str | None, lot_barcode: str | None, *, exclude_id: int | None = None) -> None:
    if lot_number is not None:
        q = db.session.query(Lot.id).filter_by(product_id=product_id, lot_number=lot_number)
        if exclude_id is not None:
            q = q.filter(Lot.id != exclude_id)
        if q.first() is not None:
            raise ConflictError(
                f"Lot number {lot_number!r} already exists for this product",
                details={"product_id": product_id, "lot_number": lot_number},
            )
    if lot_barcode:
        q = db.session.query(Lot.id).filter_by(lot_barcode=lot_barcode)
        if exclude_id is not None:
            q = q.filter(Lot.id != exclude_id)
        if q.first() is not None:
            raise ConflictError(
                f"Lot barcode {lot_barcode!r} is already in use",
                details={"lot_barcode": lot_barcode},
            )


def create_lot(*, patch: dict, actor: str) -> Lot:
    """
    Create a lot from a validated patch and record its ENTRY movement.

    Required keys: product_id, lot_number, manufacture_date, expiration_date,
    initial_quantity. Optional: lot_barcode, unit_cost_cents, supplier_id, notes.
    """
    missing = sorted(k for k in REQUIRED_ON_CREATE if patch.get(k) is None)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    enforce_rules_lot(patch)

    def _op():
        product = get_product(patch["product_id"], require_active=True)
        _ensure_unique(product.id, patch["lot_number"], patch.get("lot_barcode"))

        qty = patch["initial_quantity"]
        lot = Lot(
            product_id=product.id,
            lot_number=patch["lot_number"],
            lot_barcode=patch.get("lot_barcode") or None,
            initial_quantity=qty,
            current_quantity=qty,
            reserved_quantity=0,
            manufacture_date=patch["manufacture_date"],
            expiration_date=patch["expiration_date"],
            unit_cost_cents=patch.get("unit_cost_cents") or 0,
            supplier_id=patch.get("supplier_id"),
            notes=patch.get("notes"),
            is_active=True,
        )
        db.session.add(lot)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(
                "Lot number or barcode already exists",
                details={"product_id": product.id, "lot_number": patch["lot_number"]},
            )

        append_movement(
            lot=lot,
            kind=MovementKind.ENTRY,
            quantity=qty,
            current_delta=qty,
            actor=actor,
            reason=f"Lot {lot.lot_number} received",
        )

        db.session.commit()
        return lot

    return run_with_retry(_op)


def get_lot(lot_id: int, *, require_active: bool = False) -> Lot:
    lot = fetch_fresh(Lot, lot_id)
    if lot is None:
        raise NotFoundError("Lot not found", details={"lot_id": lot_id})
    if require_active and not lot.is_active:
        raise NotFoundError("Lot is inactive", details={"lot_id": lot_id})
    return lot


def find_lot_by_barcode(code: str) -> Lot | None:
    value = (code or "").strip()
    if not value:
        return None
    return db.session.query(Lot).populate_existing().filter_by(lot_barcode=value).first()


def get_lot_by_barcode(code: str) -> Lot:
    lot = find_lot_by_barcode(code)
    if lot is None:
        raise NotFoundError("Lot not found", details={"lot_barcode": code})
    return lot


def update_lot(lot_id: int, *, patch: dict, actor: str) -> Lot:
    """Update descriptive fields of an active lot. Quantities are rejected."""
    forbidden = sorted(set(patch) & QUANTITY_FIELDS)
    if forbidden:
        raise ValidationError(
            f"Quantity fields cannot be updated directly: {', '.join(forbidden)}",
            details={"fields": forbidden},
        )
    unknown = sorted(set(patch) - MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    def _op():
        lot = get_lot(lot_id, require_active=True)
        enforce_rules_lot(patch, existing=lot)

        _ensure_unique(
            lot.product_id,
            patch.get("lot_number") if patch.get("lot_number") != lot.lot_number else None,
            patch.get("lot_barcode") if patch.get("lot_barcode") != lot.lot_barcode else None,
            exclude_id=lot.id,
        )

        for key, value in patch.items():
            setattr(lot, key, value)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("Lot number or barcode already exists", details={"lot_id": lot_id})
        return lot

    return run_with_retry(_op)


def deactivate_lot(lot_id: int, *, actor: str) -> Lot:
    """
    Soft-delete a lot. Terminal.

    Refused while units are still reserved against the lot, so no open
    reservation points at an inactive lot.
    """
    def _op():
        lot = get_lot(lot_id, require_active=True)
        if lot.reserved_quantity > 0:
            raise StateConflictError(
                "Cannot deactivate a lot with outstanding reservations",
                details={"lot_id": lot_id, "reserved_quantity": lot.reserved_quantity},
            )
        lot.is_active = False
        db.session.commit()
        return lot

    return run_with_retry(_op)


def list_lots_by_product(
    product_id: int,
    *,
    active_only: bool = True,
    available_only: bool = False,
) -> list[Lot]:
    """Lots of one product in FEFO order."""
    get_product(product_id)
    q = db.session.query(Lot).populate_existing().filter(Lot.product_id == product_id)
    if active_only:
        q = q.filter(Lot.is_active.is_(True))
    if available_only:
        q = q.filter(Lot.current_quantity - Lot.reserved_quantity > 0)
    return q.order_by(*fefo_order()).all()


def list_near_expiry(days: int = 30, *, as_of: date | None = None) -> list[Lot]:
    """
    Active lots with stock on hand expiring on or before as_of + days.

    Already-expired lots are included (their status reads EXPIRED) so they
    can be written off.
    """
    if days < 0:
        raise ValidationError("days must be >= 0")
    limit_date = (as_of or today()) + timedelta(days=days)
    return (
        db.session.query(Lot)
        .filter(
            Lot.is_active.is_(True),
            Lot.current_quantity > 0,
            Lot.expiration_date <= limit_date,
        )
        .order_by(*fefo_order())
        .all()
    )


def list_lots(
    *,
    product_id: int | None = None,
    active: bool | None = None,
    expiring_before: date | None = None,
    supplier_id: int | None = None,
    status: str | None = None,
    sort: str = "expiration_date",
    page: int | None = None,
    per_page: int | None = None,
    alert_days: int = 30,
) -> dict:
    """
    Filtered lot listing.

    sort: a SORTABLE_FIELDS key, prefixed with '-' for descending.
    status: VALID / NEAR_EXPIRY / EXPIRED, translated to date bounds.
    If page is omitted, returns all items.
    """
    q = db.session.query(Lot)
    if product_id is not None:
        q = q.filter(Lot.product_id == product_id)
    if active is not None:
        q = q.filter(Lot.is_active.is_(active))
    if expiring_before is not None:
        q = q.filter(Lot.expiration_date <= expiring_before)
    if supplier_id is not None:
        q = q.filter(Lot.supplier_id == supplier_id)

    if status is not None:
        try:
            wanted = LotStatus(status.upper())
        except ValueError:
            raise ValidationError(f"unknown lot status: {status}")
        ref = today()
        alert_limit = ref + timedelta(days=alert_days)
        if wanted is LotStatus.EXPIRED:
            q = q.filter(Lot.expiration_date < ref)
        elif wanted is LotStatus.NEAR_EXPIRY:
            q = q.filter(Lot.expiration_date >= ref, Lot.expiration_date <= alert_limit)
        else:
            q = q.filter(Lot.expiration_date > alert_limit)

    descending = sort.startswith("-")
    key = sort.lstrip("-")
    column = SORTABLE_FIELDS.get(key)
    if column is None:
        raise ValidationError(
            f"sort must be one of: {', '.join(sorted(SORTABLE_FIELDS))} (prefix '-' for descending)"
        )
    q = q.order_by(column.desc() if descending else column.asc(), Lot.id.asc())

    if page is None:
        items = q.all()
        return {
            "items": [lot.to_dict(alert_days=alert_days) for lot in items],
            "count": len(items),
        }

    page = max(page, 1)
    per_page = min(max(per_page or 20, 1), 100)
    total = q.count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [lot.to_dict(alert_days=alert_days) for lot in items],
        "count": len(items),
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page,
    }

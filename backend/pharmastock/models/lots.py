from __future__ import annotations

import enum
from datetime import date, timedelta

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date, today


class LotStatus(str, enum.Enum):
    VALID = "VALID"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    EXPIRED = "EXPIRED"


def lot_status(expiration_date: date, *, as_of: date | None = None, alert_days: int = 30) -> LotStatus:
    """Derived validity status; never stored."""
    ref = as_of or today()
    if expiration_date < ref:
        return LotStatus.EXPIRED
    if expiration_date <= ref + timedelta(days=alert_days):
        return LotStatus.NEAR_EXPIRY
    return LotStatus.VALID


class Lot(db.Model):
    """
    A physical batch of one product.

    QUANTITY INVARIANT (enforced by check constraints and by every
    conditional update in reservation_service):
        0 <= reserved_quantity <= current_quantity <= initial_quantity

    initial_quantity never changes after creation. current_quantity and
    reserved_quantity are only changed by reservation_service, each change
    paired with a LotMovement in the same transaction.

    Lots are never deleted; is_active=False is terminal.
    """
    __tablename__ = "lots"
    __table_args__ = (
        db.UniqueConstraint("product_id", "lot_number", name="uq_lots_product_lot_number"),
        db.UniqueConstraint("lot_barcode", name="uq_lots_lot_barcode"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_lots_reserved_nonneg"),
        db.CheckConstraint("reserved_quantity <= current_quantity", name="ck_lots_reserved_le_current"),
        db.CheckConstraint("current_quantity <= initial_quantity", name="ck_lots_current_le_initial"),
        db.Index("ix_lots_product_expiration", "product_id", "expiration_date"),
        db.Index("ix_lots_active_expiration", "is_active", "expiration_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    lot_number = db.Column(db.String(50), nullable=False)
    lot_barcode = db.Column(db.String(64), nullable=True)

    initial_quantity = db.Column(db.Integer, nullable=False)
    current_quantity = db.Column(db.Integer, nullable=False)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    manufacture_date = db.Column(db.Date, nullable=False)
    expiration_date = db.Column(db.Date, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    supplier_id = db.Column(db.Integer, nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("lots", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_quantity(self) -> int:
        return self.current_quantity - self.reserved_quantity

    def status(self, *, as_of: date | None = None, alert_days: int = 30) -> LotStatus:
        return lot_status(self.expiration_date, as_of=as_of, alert_days=alert_days)

    def days_to_expiry(self, *, as_of: date | None = None) -> int:
        return (self.expiration_date - (as_of or today())).days

    def __repr__(self) -> str:
        return (
            f"<Lot id={self.id} product_id={self.product_id} lot_number={self.lot_number!r} "
            f"current={self.current_quantity} reserved={self.reserved_quantity}>"
        )

    def to_dict(self, *, alert_days: int = 30, as_of: date | None = None) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "lot_number": self.lot_number,
            "lot_barcode": self.lot_barcode,
            "initial_quantity": self.initial_quantity,
            "current_quantity": self.current_quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "manufacture_date": to_iso_date(self.manufacture_date),
            "expiration_date": to_iso_date(self.expiration_date),
            "days_to_expiry": self.days_to_expiry(as_of=as_of),
            "status": self.status(as_of=as_of, alert_days=alert_days).value,
            "unit_cost_cents": self.unit_cost_cents,
            "supplier_id": self.supplier_id,
            "notes": self.notes,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class MovementKind(str, enum.Enum):
    ENTRY = "ENTRY"
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"
    CONSUME = "CONSUME"
    ADJUST = "ADJUST"
    EXPIRE = "EXPIRE"
    RETURN = "RETURN"


# Sign of (current_delta, reserved_delta) per kind, in units of `quantity`.
# None means "either sign" (ADJUST).
MOVEMENT_SHAPES: dict[MovementKind, tuple[int | None, int]] = {
    MovementKind.ENTRY: (1, 0),
    MovementKind.RESERVE: (0, 1),
    MovementKind.RELEASE: (0, -1),
    MovementKind.CONSUME: (-1, -1),
    MovementKind.ADJUST: (None, 0),
    MovementKind.EXPIRE: (-1, 0),
    MovementKind.RETURN: (1, 0),
}


class LotMovement(db.Model):
    """
    Immutable ledger entry for one quantity change on a lot.

    LEDGER INVARIANTS (authoritative):
    - Append-only: rows are inserted in the same transaction as the lot
      mutation they record and are never updated or deleted.
    - quantity is the magnitude (> 0); current_delta / reserved_delta are the
      signed effects on the lot, so SUM(current_delta) == current_quantity and
      SUM(reserved_delta) == reserved_quantity for every lot.
    - current_after / reserved_after snapshot the lot right after the change.
    """
    __tablename__ = "lot_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_lot_movements_quantity_pos"),
        db.Index("ix_lot_movements_lot_occurred", "lot_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    current_delta = db.Column(db.Integer, nullable=False, default=0)
    reserved_delta = db.Column(db.Integer, nullable=False, default=0)
    current_after = db.Column(db.Integer, nullable=False)
    reserved_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    actor = db.Column(db.String(64), nullable=False)
    sale_ref = db.Column(db.String(64), nullable=True, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    lot = db.relationship("Lot", backref=db.backref("movements", lazy="dynamic"))

    def __repr__(self) -> str:
        return f"<LotMovement id={self.id} lot_id={self.lot_id} kind={self.kind} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lot_id": self.lot_id,
            "product_id": self.product_id,
            "kind": self.kind,
            "quantity": self.quantity,
            "current_delta": self.current_delta,
            "reserved_delta": self.reserved_delta,
            "current_after": self.current_after,
            "reserved_after": self.reserved_after,
            "reason": self.reason,
            "actor": self.actor,
            "sale_ref": self.sale_ref,
            "occurred_at": to_utc_z(self.occurred_at),
        }


@event.listens_for(LotMovement, "before_update")
def _refuse_movement_update(mapper, connection, target):
    raise RuntimeError("lot_movements is append-only; updates are not allowed")


@event.listens_for(LotMovement, "before_delete")
def _refuse_movement_delete(mapper, connection, target):
    raise RuntimeError("lot_movements is append-only; deletes are not allowed")

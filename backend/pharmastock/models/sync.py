from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class OfflineSale(db.Model):
    """
    Idempotency record for a sale buffered by a disconnected client.

    STATUS:
    - SYNCED: replayed successfully; resubmissions are DUPLICATE no-ops.
    - CONFLICT: stock was short at replay time; resubmissions retry it.
    - RESOLVED: an operator marked a conflict as handled; treated like SYNCED.

    Envelopes that fail structural/integrity checks are never recorded.
    """
    __tablename__ = "offline_sales"
    __table_args__ = (
        db.UniqueConstraint("sale_id", name="uq_offline_sales_sale_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, index=True)

    integrity_hash = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    detail = db.Column(db.JSON, nullable=True)

    client_timestamp = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_by = db.Column(db.String(64), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)

    first_seen_at = db.Column(db.DateTime(timezone=True), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<OfflineSale sale_id={self.sale_id!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "sale_id": self.sale_id,
            "status": self.status,
            "integrity_hash": self.integrity_hash,
            "payload": self.payload,
            "detail": self.detail,
            "client_timestamp": to_utc_z(self.client_timestamp),
            "submitted_by": self.submitted_by,
            "attempts": self.attempts,
            "first_seen_at": to_utc_z(self.first_seen_at),
            "processed_at": to_utc_z(self.processed_at),
            "resolved_by": self.resolved_by,
            "resolved_at": to_utc_z(self.resolved_at),
        }

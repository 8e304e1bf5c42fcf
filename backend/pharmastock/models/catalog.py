from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data, as far as the stock subsystem needs it.

    Catalog CRUD is owned by the catalog service; lots only need a stable id,
    a display name for snapshots, the scannable barcode and the active flag.

    LOOKUP PATTERN:
    - By id: db.session.get(Product, product_id)
    - By barcode: Product.query.filter_by(barcode=code)
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("barcode", name="uq_products_barcode"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)
    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} barcode={self.barcode!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "barcode": self.barcode,
            "requires_prescription": self.requires_prescription,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }

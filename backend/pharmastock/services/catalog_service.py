# Overview: Narrow read interface onto the product catalog collaborator.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product
from ..errors import NotFoundError, ValidationError, ConflictError


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    if require_active and not product.is_active:
        raise NotFoundError("Product is inactive", details={"product_id": product_id})
    return product


def find_product_by_barcode(barcode: str) -> Product | None:
    code = (barcode or "").strip()
    if not code:
        return None
    return db.session.query(Product).filter_by(barcode=code).first()


def create_product(*, name: str, barcode: str | None = None, requires_prescription: bool = False) -> Product:
    """Minimal catalog insert used by the CLI and test fixtures."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")

    product = Product(
        name=name,
        barcode=barcode.strip() if barcode else None,
        requires_prescription=requires_prescription,
        is_active=True,
    )
    db.session.add(product)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Barcode {barcode!r} is already in use", details={"barcode": barcode})
    return product

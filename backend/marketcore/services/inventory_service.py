# Overview: Stock reservation primitives for flat and per-variant product stock.

"""
Inventory ledger operations.

RULES:
- Stock mutations run in the caller's transaction and never commit. The
  maintenance resync (resync_flat_stock) is the one function that commits.
- Stock never goes negative: decrements are conditional UPDATEs and the
  check constraints on products/product_variants back that up.
- When a product has variants its flat count_in_stock is resynced after
  every variant mutation.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, ProductVariant
from .concurrency import lock_for_update, run_with_retry

logger = logging.getLogger(__name__)


def _norm(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def load_product_for_update(product_id: int) -> Product:
    """Load a product row locked for the active transaction."""
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if not product:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def resolve_variant(product: Product, size=None, color=None, age_group=None) -> ProductVariant | None:
    """Find the variant matching (size, color, age_group). Missing attributes match ''."""
    key = (_norm(size), _norm(color), _norm(age_group))
    for variant in product.variants:
        if variant.key == key:
            return variant
    return None


def available_quantity(product: Product, size=None, color=None, age_group=None) -> int:
    if product.has_variants:
        variant = resolve_variant(product, size, color, age_group)
        return variant.stock if variant else 0
    return product.count_in_stock


def _decrement(model, row_id: int, column, qty: int) -> bool:
    """Conditional decrement; False when the row no longer holds qty units."""
    result = db.session.execute(
        update(model)
        .where(model.id == row_id, column >= qty)
        .values({column: column - qty, model.version_id: model.version_id + 1})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _current_stock(model, row_id: int, column) -> int:
    return db.session.execute(select(column).where(model.id == row_id)).scalar_one()


def reserve_line(product: Product, qty: int, size=None, color=None, age_group=None) -> ProductVariant | None:
    """
    Decrement stock for one order line.

    Products with variants require a matching variant. The decrement is a
    single UPDATE ... WHERE stock >= qty, so a buyer who loses a race sees
    ConflictError with the stock that is actually left instead of a retry.
    """
    if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
        raise ValidationError("Quantity must be a positive integer", details={"product_id": product.id, "qty": qty})

    variant = None
    if product.has_variants:
        variant = resolve_variant(product, size, color, age_group)
        if variant is None:
            raise NotFoundError(
                "Variant not found",
                details={
                    "product_id": product.id,
                    "size": _norm(size),
                    "color": _norm(color),
                    "age_group": _norm(age_group),
                },
            )
        model, row_id, column = ProductVariant, variant.id, ProductVariant.stock
    else:
        model, row_id, column = Product, product.id, Product.count_in_stock

    if not _decrement(model, row_id, column, qty):
        raise ConflictError(
            f"Insufficient stock for {product.name}",
            details={"product_id": product.id, "available": _current_stock(model, row_id, column), "requested": qty},
        )

    if variant is not None:
        variant_sum = (
            select(func.coalesce(func.sum(ProductVariant.stock), 0))
            .where(ProductVariant.product_id == product.id)
            .scalar_subquery()
        )
        db.session.execute(
            update(Product)
            .where(Product.id == product.id)
            .values(count_in_stock=variant_sum, version_id=Product.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(variant)
    db.session.refresh(product)
    return variant


def restore_line(product: Product, qty: int, size=None, color=None, age_group=None) -> None:
    """
    Return stock for one order line.

    Falls back to the flat counter when the variant no longer exists.
    """
    variant = resolve_variant(product, size, color, age_group) if product.has_variants else None
    if variant is not None:
        variant.stock += qty
        product.sync_flat_stock()
        return

    if product.has_variants:
        logger.warning(
            "Variant %s/%s/%s missing on product %s; restoring to flat stock",
            _norm(size), _norm(color), _norm(age_group), product.id,
        )
    product.count_in_stock += qty


def validate_line_stock(product: Product, size=None, color=None, age_group=None) -> None:
    """Check that the line's stock counter is not negative. No mutation."""
    if product.has_variants:
        variant = resolve_variant(product, size, color, age_group)
        stock = variant.stock if variant else product.count_in_stock
    else:
        stock = product.count_in_stock
    if stock < 0:
        raise ConflictError(
            f"Negative stock detected for {product.name}",
            details={"product_id": product.id, "stock": stock},
        )


def flat_stock_drift() -> list[tuple[int, int, int]]:
    """(product_id, flat stock, variant sum) for variant products whose cached flat stock drifted."""
    variant_sum = func.sum(ProductVariant.stock)
    rows = (
        db.session.query(Product.id, Product.count_in_stock, variant_sum)
        .join(ProductVariant, ProductVariant.product_id == Product.id)
        .group_by(Product.id, Product.count_in_stock)
        .having(Product.count_in_stock != variant_sum)
        .order_by(Product.id)
        .all()
    )
    return [(product_id, flat, int(total)) for product_id, flat, total in rows]


def resync_flat_stock(product_id: int) -> int:
    """Rewrite a variant product's flat stock from its variant rows and commit."""
    def _op():
        product = load_product_for_update(product_id)
        before = product.count_in_stock
        product.sync_flat_stock()
        db.session.commit()
        if before != product.count_in_stock:
            logger.info("Flat stock of product %s resynced: %s -> %s", product_id, before, product.count_in_stock)
        return product.count_in_stock

    return run_with_retry(_op)

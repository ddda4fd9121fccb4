from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.models.catalog import Product, ProductVariant
from storefront.schemas.checkout import CartItem

logger = get_logger(__name__)


@dataclass(slots=True)
class InventoryReport:
    out_of_stock_items: list[dict] = field(default_factory=list)
    insufficient_stock_items: list[dict] = field(default_factory=list)
    inactive_items: list[dict] = field(default_factory=list)
    products: dict[str, Product] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not (self.out_of_stock_items or self.insufficient_stock_items or self.inactive_items)

    def as_details(self) -> dict:
        return {
            "out_of_stock_items": self.out_of_stock_items,
            "insufficient_stock_items": self.insufficient_stock_items,
            "inactive_items": self.inactive_items,
        }


def _requested_quantities(items: Iterable[CartItem]) -> OrderedDict[tuple[str, str | None], tuple[CartItem, int]]:
    requested: OrderedDict[tuple[str, str | None], tuple[CartItem, int]] = OrderedDict()
    for item in items:
        if not item.product_id:
            continue
        key = (item.product_id, item.variant_id)
        first, quantity = requested.get(key, (item, 0))
        requested[key] = (first, quantity + item.quantity)
    return requested


async def validate_inventory(session: AsyncSession, store_id: str, items: list[CartItem]) -> InventoryReport:
    """
    Check every cart line against live stock and collect all violations.

    Quantities of repeated lines for the same product or variant are summed.
    Untracked lines and lines that allow backorder are exempt; lines without
    a product id are custom lines and are not checked.
    """
    report = InventoryReport()
    requested = _requested_quantities(items)
    if not requested:
        return report

    product_ids = {product_id for product_id, _ in requested}
    variant_ids = {variant_id for _, variant_id in requested if variant_id}

    product_rows = await session.execute(
        select(Product).where(Product.store_id == store_id, Product.id.in_(product_ids))
    )
    report.products = {product.id: product for product in product_rows.scalars().all()}

    variants: dict[str, ProductVariant] = {}
    if variant_ids:
        variant_rows = await session.execute(select(ProductVariant).where(ProductVariant.id.in_(variant_ids)))
        variants = {variant.id: variant for variant in variant_rows.scalars().all()}

    for (product_id, variant_id), (item, quantity) in requested.items():
        product = report.products.get(product_id)
        label = {
            "product_id": product_id,
            "variant_id": variant_id,
            "name": item.name or (product.name if product else None),
        }
        if product is None or not product.is_active:
            report.inactive_items.append(label)
            continue

        if variant_id:
            variant = variants.get(variant_id)
            if variant is None or variant.product_id != product_id or not variant.is_active:
                report.inactive_items.append(label)
                continue
            tracked, backorder, available = variant.track_inventory, variant.allow_backorder, variant.inventory
        else:
            tracked, backorder, available = product.track_inventory, product.allow_backorder, product.inventory

        if not tracked or backorder:
            continue
        if available <= 0:
            report.out_of_stock_items.append(label)
        elif available < quantity:
            report.insufficient_stock_items.append({**label, "requested": quantity, "available": available})

    if not report.ok:
        logger.info("checkout.inventory.rejected", store_id=store_id, **report.as_details())
    return report

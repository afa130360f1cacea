"""Product catalog hook for ``products/update`` webhooks.

Catalog sync into Bitrix is not performed: the handler only records what
changed. It never reads or writes deals.
"""

from __future__ import annotations

import structlog

from src.app.deals.schemas import ShopifyProduct

logger = structlog.get_logger(__name__)


async def handle_product_updated(product: ShopifyProduct) -> int:
    """Log a product update and return the number of variants seen."""
    skus = [v.sku for v in product.variants if v.sku]
    logger.info(
        "catalog.product_updated",
        product_id=product.id,
        title=product.title,
        variant_count=len(product.variants),
        skus=skus,
    )
    return len(product.variants)

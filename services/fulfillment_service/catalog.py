"""Read-only client for the product catalog service."""
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from services.inventory_service.ledger import VariantRef

logger = logging.getLogger(__name__)


class CatalogEntry(BaseModel):
    """Current catalog data for one variant."""
    sku: Optional[str] = None
    price: float


class CatalogClient:
    """
    Resolves variants to their current SKU and price.

    Used for best-effort reconciliation only: lookups that fail for any
    reason return ``None`` instead of raising, and an unconfigured client
    never makes a request.
    """

    def __init__(
        self,
        base_url: Optional[str],
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        if self.base_url:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def get_entry(self, ref: VariantRef) -> Optional[CatalogEntry]:
        if self._client is None:
            return None

        try:
            response = await self._client.get(f"/products/{ref.product_id}")
            response.raise_for_status()
            product = response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                logger.warning(f"Catalog lookup for {ref} failed with status {e.response.status_code}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Catalog lookup for {ref} failed: {e}")
            return None

        return self._entry_from_product(ref, product)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()

    def _entry_from_product(self, ref: VariantRef, product: Dict[str, Any]) -> Optional[CatalogEntry]:
        if ref.variant_id:
            for variant in product.get("variants") or []:
                variant_id = variant.get("variantId") or variant.get("variant_id")
                if variant_id == ref.variant_id:
                    price = variant.get("price", product.get("price"))
                    if price is None:
                        return None
                    return CatalogEntry(sku=variant.get("sku"), price=price)
            return None

        if product.get("price") is None:
            return None
        return CatalogEntry(sku=product.get("sku"), price=product["price"])

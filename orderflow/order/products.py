"""
Order Service - synchronous client for the product-owning service.

One bounded-timeout GET per order; no retry inside the request path.
"""

import logging
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ..errors import ProductNotFound, UpstreamUnavailable
from .models import ProductSnapshot

logger = logging.getLogger(__name__)


class ProductClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def get_product(self, product_id: str) -> ProductSnapshot:
        path = f"/products/{quote(product_id, safe='')}"
        logger.info("SYNC >> GET %s%s", self.base_url, path)
        try:
            resp = await self._client.get(path)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(
                f"Product service call failed: {type(e).__name__}", productId=product_id
            ) from e

        if resp.status_code == 404:
            raise ProductNotFound("Product not found", productId=product_id)
        if resp.status_code != 200:
            raise UpstreamUnavailable(
                f"Product service answered {resp.status_code}", productId=product_id
            )

        try:
            product = ProductSnapshot.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise UpstreamUnavailable(
                "Product service returned an unreadable product", productId=product_id
            ) from e

        logger.info("SYNC << %s found (stock: %d)", product.name, product.stock)
        return product

    async def aclose(self) -> None:
        await self._client.aclose()

"""
Rezdy catalog client.

Fetch functions handed to the cache manager and the pickup resolver are built
on this client. It never retries; retry policy belongs to the caller.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar
import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConfigurationMissingError, UpstreamUnavailableError
from shared.logging import get_logger
from ..models import AvailabilitySession, Category, PickupLocation, Product

ModelT = TypeVar("ModelT", bound=BaseModel)

SERVICE_NAME = "rezdy"


class RezdyClient:
    """Thin async client over the Rezdy REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("booking.rezdy_client")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def fetch_categories(self, visible_only: bool = False) -> List[Category]:
        """Fetch all categories, optionally only those visible on the storefront."""
        data = await self._get("/categories")
        categories = self._parse_list(Category, data.get("categories") or data.get("data") or [], "/categories")
        if visible_only:
            categories = [category for category in categories if category.is_visible]
        return categories

    async def fetch_category_products(self, category_id: int, limit: int = 100, offset: int = 0) -> List[Product]:
        path = f"/categories/{category_id}/products"
        data = await self._get(path, {"limit": limit, "offset": offset})
        return self._parse_list(Product, data.get("products") or [], path)

    async def fetch_products(self, limit: int = 100, offset: int = 0) -> List[Product]:
        data = await self._get("/products", {"limit": limit, "offset": offset})
        return self._parse_list(Product, data.get("products") or [], "/products")

    async def fetch_product(self, product_code: str) -> Optional[Product]:
        """Fetch one product; None when the platform does not know the code."""
        path = f"/products/{product_code}"
        data = await self._get(path, allow_not_found=True)
        if data is None or not data.get("product"):
            return None
        return self._parse_one(Product, data["product"], path)

    async def fetch_availability(
        self,
        product_code: str,
        start_time: str,
        end_time: str,
        participants: Optional[int] = None,
    ) -> List[AvailabilitySession]:
        params: Dict[str, Any] = {
            "productCode": product_code,
            "startTime": start_time,
            "endTime": end_time,
        }
        if participants is not None:
            params["participants"] = participants

        data = await self._get("/availability", params)
        return self._parse_list(AvailabilitySession, data.get("sessions") or [], "/availability")

    async def fetch_pickups(self, product_code: str) -> List[PickupLocation]:
        """Single-product pickup lookup."""
        path = f"/products/{product_code}/pickups"
        data = await self._get(path, allow_not_found=True)
        if data is None:
            return []

        raw_pickups = data.get("pickupLocations") or []
        try:
            return [PickupLocation.from_upstream(item) for item in raw_pickups]
        except (PydanticValidationError, TypeError) as exc:
            raise UpstreamUnavailableError(SERVICE_NAME, "malformed pickup payload", {"path": path, "error": str(exc)})

    async def _get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            raise ConfigurationMissingError("rezdy_api_key", "Rezdy API key is not configured")

        url = f"{self.base_url}{path}"
        query = {"apiKey": self.api_key, **(params or {})}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=query, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            self.logger.error("Rezdy request failed", path=path, error=str(exc))
            raise UpstreamUnavailableError(SERVICE_NAME, str(exc) or type(exc).__name__, {"path": path})

        if response.status_code == 404 and allow_not_found:
            self.logger.info("Rezdy resource not found", path=path)
            return None

        if response.status_code != 200:
            self.logger.error(
                "Rezdy request returned unexpected status",
                path=path,
                status_code=response.status_code,
            )
            raise UpstreamUnavailableError(
                SERVICE_NAME,
                f"Unexpected status {response.status_code}",
                {"path": path, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            raise UpstreamUnavailableError(SERVICE_NAME, "response body is not JSON", {"path": path})

        if not isinstance(data, dict):
            raise UpstreamUnavailableError(SERVICE_NAME, "response body is not an object", {"path": path})

        request_status = data.get("requestStatus")
        if isinstance(request_status, dict) and request_status.get("success") is False:
            error = request_status.get("error") or {}
            message = error.get("errorMessage") if isinstance(error, dict) else str(error)
            raise UpstreamUnavailableError(SERVICE_NAME, message or "request rejected", {"path": path})

        self.logger.debug("Rezdy response received", path=path)
        return data

    @staticmethod
    def _parse_list(model: Type[ModelT], items: Any, path: str) -> List[ModelT]:
        if not isinstance(items, list):
            raise UpstreamUnavailableError(SERVICE_NAME, "expected a list", {"path": path})
        try:
            return [model.model_validate(item) for item in items]
        except PydanticValidationError as exc:
            raise UpstreamUnavailableError(SERVICE_NAME, "malformed payload", {"path": path, "error": str(exc)})

    @staticmethod
    def _parse_one(model: Type[ModelT], item: Any, path: str) -> ModelT:
        try:
            return model.model_validate(item)
        except PydanticValidationError as exc:
            raise UpstreamUnavailableError(SERVICE_NAME, "malformed payload", {"path": path, "error": str(exc)})

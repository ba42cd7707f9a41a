"""
Booking state layer service: correlation store, sessions, read-through
catalog cache and pickup resolution behind a thin HTTP surface.
"""

import secrets
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Query, Request, Response
from fastapi.concurrency import run_in_threadpool

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, NotFoundError, ValidationError
from shared.logging import set_booking_context
from .caching.cache_manager import CacheLookup, CacheManager, categories_key, category_products_key
from .caching.entities import EntityType, build_cache_key
from .caching.warm_plan import WarmPlanLoader
from .correlation.order_keys import normalize_order_number
from .correlation.store import CorrelationStore, RedisCorrelationStore, create_correlation_store
from .models import BookingRegistration, LoginRequest
from .pickups.index import PickupIndex
from .pickups.resolver import PickupResolver, validate_product_code
from .sessions.store import SessionStore
from .upstream.rezdy_client import RezdyClient


REMEMBER_ME_TTL = 7 * 24 * 3600


def _dump(value: Any) -> Any:
    """Serialize cached pydantic models (or lists of them) with upstream field names."""
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, exclude_none=True, mode="json")
    return value


def _parse_date(value: str, field: str) -> str:
    """Accept ISO dates or datetimes and return ``YYYY-MM-DD``."""
    try:
        if len(value) == 10:
            return date.fromisoformat(value).isoformat()
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        raise ValidationError(f"Invalid date format for {field}", {field: value})


class BookingService(BaseService):
    """Booking state layer service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        rezdy_client: Optional[RezdyClient] = None,
        session_store: Optional[SessionStore] = None,
        correlation_store: Optional[CorrelationStore] = None,
        pickup_index: Optional[PickupIndex] = None,
    ):
        super().__init__("booking", 8080, config)

        self.rezdy_client = rezdy_client or RezdyClient(
            self.config.rezdy_base_url,
            self.config.rezdy_api_key,
            timeout=self.config.rezdy_timeout_seconds,
        )
        self.correlation_store = correlation_store or create_correlation_store(
            self.config.correlation_backend,
            redis_url=self.config.redis_url,
            ttl_seconds=self.config.correlation_ttl_seconds,
            sweep_interval_seconds=self.config.correlation_sweep_interval_seconds,
            metrics=self.metrics,
        )
        self.session_store = session_store or SessionStore(
            self.config.redis_url,
            self.config.session_ttl_seconds,
            metrics=self.metrics,
        )
        self.cache_manager = CacheManager(
            self.rezdy_client,
            metrics=self.metrics,
            ttl_overrides=self.config.cache_ttl_overrides,
            max_entries=self.config.cache_max_entries,
            warm_plan=WarmPlanLoader(self.config.warm_plan_file, self.config.popular_categories),
            warm_concurrency=self.config.cache_warm_concurrency,
            cleanup_interval_seconds=self.config.cache_cleanup_interval_seconds,
        )
        self.pickup_index = pickup_index or PickupIndex(self.config.pickup_data_dir)
        self.pickup_resolver = PickupResolver(
            self.pickup_index,
            self.cache_manager,
            self.rezdy_client.fetch_pickups,
            timeout=self.config.rezdy_timeout_seconds,
            metrics=self.metrics,
        )

        @self.app.on_event("startup")
        async def _startup():
            await self.correlation_store.start()
            await self.session_store.start()
            await self.cache_manager.start()
            if not self.pickup_index.is_built:
                await run_in_threadpool(self.pickup_index.refresh_index)
            if not self.rezdy_client.configured:
                self.logger.warning("Rezdy API key is not configured; catalog routes will fail")

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.cache_manager.shutdown()
            await self.correlation_store.shutdown()
            await self.session_store.close()

        self._setup_booking_routes()
        self._setup_auth_routes()
        self._setup_catalog_routes()
        self._setup_cache_routes()
        self._setup_pickup_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.booking_service = self

    @property
    def upstream_timeout(self) -> float:
        return self.config.rezdy_timeout_seconds

    def _apply_cache_headers(self, response: Response, entity_type: EntityType, lookup: CacheLookup) -> None:
        response.headers["Cache-Control"] = self.cache_manager.policy(entity_type).cache_control
        response.headers["X-Cache"] = "HIT" if lookup.hit else "MISS"
        response.headers["X-Cache-Key"] = lookup.key

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check booking service dependencies."""
        dependencies: Dict[str, str] = {}

        try:
            dependencies["redis"] = "ok" if await self.session_store.ping() else "error"
        except Exception as exc:
            self.logger.warning("Redis health check failed", error=str(exc))
            dependencies["redis"] = "error"

        if isinstance(self.correlation_store, RedisCorrelationStore):
            try:
                dependencies["correlation_store"] = "ok" if await self.correlation_store.ping() else "error"
            except Exception as exc:
                self.logger.warning("Correlation store health check failed", error=str(exc))
                dependencies["correlation_store"] = "error"
        else:
            dependencies["correlation_store"] = "ok"

        dependencies["rezdy"] = "ok" if self.rezdy_client.configured else "not_configured"
        dependencies["pickup_index"] = "ok" if self.pickup_index.is_built else "not_built"
        return dependencies

    def _setup_booking_routes(self):
        """Booking correlation routes used across the payment redirect."""

        @self.app.post("/api/bookings/register")
        async def register_booking(registration: BookingRegistration):
            """Keep a booking submission until the payment provider calls back."""
            order_number = registration.order_number.strip()
            set_booking_context(order_number=order_number)

            payload = registration.booking_data.model_dump(by_alias=True, exclude_none=True, mode="json")
            if registration.session_id:
                payload["checkoutSessionId"] = registration.session_id
            await self.correlation_store.store(order_number, payload)

            return {
                "success": True,
                "orderNumber": normalize_order_number(order_number),
                "expiresInSeconds": self.correlation_store.ttl_seconds,
            }

        @self.app.get("/api/bookings/stats")
        async def booking_store_stats():
            """Correlation store statistics."""
            return await self.correlation_store.stats()

        @self.app.get("/api/bookings/{order_number}")
        async def get_booking(order_number: str):
            set_booking_context(order_number=order_number)
            payload = await self.correlation_store.retrieve_with_fallbacks(order_number)
            if payload is None:
                raise NotFoundError("Booking not found or expired", {"orderNumber": order_number})
            return {"orderNumber": order_number, "bookingData": payload}

        @self.app.post("/api/bookings/{order_number}/complete")
        async def complete_booking(order_number: str):
            """Hand the stored submission to the confirmation flow and forget it."""
            set_booking_context(order_number=order_number)
            found = await self.correlation_store.locate_with_fallbacks(order_number)
            if found is None:
                raise NotFoundError("Booking not found or expired", {"orderNumber": order_number})

            matched_key, payload = found
            await self.correlation_store.remove(matched_key)
            self.logger.info("Booking completed", order_number=order_number)
            return {"orderNumber": order_number, "bookingData": payload, "completed": True}

    def _setup_auth_routes(self):
        """Session-backed authentication routes."""
        cookie_name = self.config.session_cookie_name

        @self.app.post("/api/auth/login")
        async def login(credentials: LoginRequest, response: Response):
            email_ok = secrets.compare_digest(
                credentials.email.strip().lower().encode("utf-8"),
                self.config.demo_user_email.lower().encode("utf-8"),
            )
            password_ok = secrets.compare_digest(
                credentials.password.encode("utf-8"),
                self.config.demo_user_password.encode("utf-8"),
            )
            if not (email_ok and password_ok):
                raise AuthenticationError("Invalid credentials")

            ttl = REMEMBER_ME_TTL if credentials.remember_me else self.config.session_ttl_seconds
            session = await self.session_store.create_session(credentials.email.strip().lower(), ttl)
            set_booking_context(session_id=session.id)

            response.set_cookie(
                cookie_name,
                session.id,
                max_age=ttl,
                httponly=True,
                samesite="strict",
                secure=self.config.env != "local",
                path="/",
            )
            return {
                "success": True,
                "user": {"email": session.subject},
                "expiresAt": session.expires_at,
            }

        @self.app.get("/api/auth/session")
        async def get_session(request: Request):
            session_id = request.cookies.get(cookie_name)
            session = await self.session_store.get_session(session_id)
            if session is None:
                return {"valid": False}

            set_booking_context(session_id=session.id)
            await self.session_store.refresh_session(session.id)
            return {"valid": True, "user": {"email": session.subject}}

        @self.app.post("/api/auth/logout")
        async def logout(request: Request, response: Response):
            session_id = request.cookies.get(cookie_name)
            await self.session_store.delete_session(session_id)
            response.delete_cookie(cookie_name, path="/", httponly=True, samesite="strict")
            return {"success": True}

    def _setup_catalog_routes(self):
        """Cached catalog and availability routes."""

        @self.app.get("/api/rezdy/categories")
        async def get_categories(
            response: Response,
            visible_only: bool = Query(False, alias="visibleOnly"),
        ):
            lookup = await self.cache_manager.get_or_fetch(
                EntityType.CATEGORIES,
                categories_key(visible_only),
                lambda: self.rezdy_client.fetch_categories(visible_only=visible_only),
                timeout=self.upstream_timeout,
            )
            categories = _dump(lookup.value or [])
            self._apply_cache_headers(response, EntityType.CATEGORIES, lookup)
            return {"categories": categories, "count": len(categories)}

        @self.app.get("/api/rezdy/categories/{category_id}/products")
        async def get_category_products(
            category_id: int,
            response: Response,
            limit: int = Query(100, ge=1, le=1000),
            offset: int = Query(0, ge=0),
        ):
            if category_id <= 0:
                raise ValidationError("Category id must be a positive integer", {"categoryId": category_id})

            lookup = await self.cache_manager.get_or_fetch(
                EntityType.CATEGORY_PRODUCTS,
                category_products_key(category_id, limit, offset),
                lambda: self.rezdy_client.fetch_category_products(category_id, limit, offset),
                timeout=self.upstream_timeout,
            )
            products = _dump(lookup.value or [])
            self._apply_cache_headers(response, EntityType.CATEGORY_PRODUCTS, lookup)
            return {"categoryId": category_id, "products": products, "count": len(products)}

        @self.app.get("/api/rezdy/products")
        async def get_products(
            response: Response,
            limit: int = Query(100, ge=1, le=1000),
            offset: int = Query(0, ge=0),
        ):
            lookup = await self.cache_manager.get_or_fetch(
                EntityType.PRODUCTS,
                build_cache_key("products", limit=limit, offset=offset),
                lambda: self.rezdy_client.fetch_products(limit, offset),
                timeout=self.upstream_timeout,
            )
            products = _dump(lookup.value or [])
            self._apply_cache_headers(response, EntityType.PRODUCTS, lookup)
            return {"products": products, "count": len(products)}

        @self.app.get("/api/tours/{product_code}")
        async def get_tour(
            product_code: str,
            response: Response,
            refresh: bool = Query(False),
        ):
            product_code = validate_product_code(product_code)
            key = build_cache_key("tour", product_code)

            def fetch():
                return self.rezdy_client.fetch_product(product_code)

            if refresh:
                lookup = await self.cache_manager.refresh(EntityType.PRODUCT, key, fetch, timeout=self.upstream_timeout)
            else:
                lookup = await self.cache_manager.get_or_fetch(EntityType.PRODUCT, key, fetch, timeout=self.upstream_timeout)

            if lookup.value is None:
                raise NotFoundError("Tour not found", {"productCode": product_code})

            self._apply_cache_headers(response, EntityType.PRODUCT, lookup)
            return {"product": _dump(lookup.value)}

        @self.app.get("/api/rezdy/availability")
        async def get_availability(
            response: Response,
            product_code: str = Query(..., alias="productCode"),
            start_time: str = Query(..., alias="startTime"),
            end_time: str = Query(..., alias="endTime"),
            participants: Optional[int] = Query(None, ge=1),
        ):
            product_code = validate_product_code(product_code)
            start = _parse_date(start_time, "startTime")
            end = _parse_date(end_time, "endTime")
            if end < start:
                raise ValidationError("endTime must not be before startTime", {"startTime": start, "endTime": end})

            lookup = await self.cache_manager.get_or_fetch(
                EntityType.AVAILABILITY,
                build_cache_key("availability", product_code, startTime=start, endTime=end, participants=participants),
                lambda: self.rezdy_client.fetch_availability(product_code, start, end, participants),
                timeout=self.upstream_timeout,
            )
            sessions = _dump(lookup.value or [])
            self._apply_cache_headers(response, EntityType.AVAILABILITY, lookup)
            return {
                "availability": [{"productCode": product_code, "sessions": sessions}] if sessions else [],
                "sessions": sessions,
            }

    def _setup_cache_routes(self):
        """Operator cache warming and introspection."""

        @self.app.post("/api/cache/warm")
        async def warm_cache(category_id: Optional[int] = Query(None, alias="categoryId")):
            if category_id is not None:
                result = await self.cache_manager.preload_category(category_id)
                return {
                    "success": True,
                    "message": f"Cache warmed for category {category_id}",
                    "categoryId": category_id,
                    "result": result,
                }

            summary = await self.cache_manager.initialize_cache()
            return {
                "success": not summary["errors"],
                "message": "Cache warmed for all popular categories",
                "summary": summary,
            }

        @self.app.get("/api/cache/warm")
        async def cache_status(health: bool = Query(False)):
            timestamp = datetime.now(timezone.utc).isoformat()
            if health:
                return {**self.cache_manager.health_status(), "timestamp": timestamp}
            return {"metrics": self.cache_manager.performance_metrics(), "timestamp": timestamp}

    def _setup_pickup_routes(self):
        """Pickup resolution and index administration."""

        @self.app.get("/api/pickup-details/{product_code}")
        async def get_pickup_details(product_code: str):
            resolution = await self.pickup_resolver.resolve(product_code)
            return resolution.to_response()

        @self.app.post("/api/pickup-details/{verb}")
        async def pickup_index_admin(verb: str):
            if verb == "stats":
                return {
                    "stats": self.pickup_index.location_stats(),
                    "metadata": self.pickup_index.index_metadata(),
                    "message": "Local pickup data statistics",
                }
            if verb == "refresh":
                summary = await run_in_threadpool(self.pickup_index.refresh_index)
                return {
                    "totalProducts": summary["total_products"],
                    "productsWithPickups": summary["products_with_pickups"],
                    "lastUpdated": summary["last_updated"],
                    "message": "Local pickup index refreshed successfully",
                }
            raise ValidationError("Invalid action. Use stats or refresh.", {"action": verb})

        @self.app.get("/api/pickup-filter")
        async def pickup_filter(
            location: Optional[str] = Query(None),
            product_codes: Optional[str] = Query(None, alias="productCodes"),
        ):
            """Filter product codes (comma separated) by pickup region."""
            if product_codes is None:
                codes: List[str] = self.pickup_index.products_for_location(location or "")
                return {"location": location, "productCodes": codes, "count": len(codes)}

            requested = [code.strip() for code in product_codes.split(",") if code.strip()]
            result = self.pickup_index.filter_product_codes(requested, location)
            return {"productCodes": result["filtered_products"], "stats": result["stats"]}


def create_app():
    """Create FastAPI application."""
    service = BookingService()
    return service.app


if __name__ == "__main__":
    service = BookingService()
    service.run()

"""
Unit tests for the Rezdy catalog client.
"""

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_booking.app.upstream.rezdy_client import RezdyClient
from shared.errors import ConfigurationMissingError, UpstreamUnavailableError


def make_client(handler, api_key="test-key"):
    return RezdyClient("https://rezdy.test/v1/", api_key, transport=httpx.MockTransport(handler))


class TestRezdyClient:
    """Test cases for RezdyClient."""

    @pytest.mark.asyncio
    async def test_fetch_categories_filters_visible(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "requestStatus": {"success": True},
                "categories": [
                    {"id": 1, "name": "Day Tours", "isVisible": True},
                    {"id": 2, "name": "Hidden", "isVisible": False},
                ],
            })

        client = make_client(handler)
        categories = await client.fetch_categories(visible_only=True)

        assert [category.id for category in categories] == [1]
        assert requests[0].url.path == "/v1/categories"
        assert requests[0].url.params["apiKey"] == "test-key"

    @pytest.mark.asyncio
    async def test_fetch_category_products_passes_paging(self):
        def handler(request):
            assert request.url.path == "/v1/categories/292858/products"
            assert request.url.params["limit"] == "50"
            assert request.url.params["offset"] == "100"
            return httpx.Response(200, json={"products": [{"productCode": "PWQF1Y", "name": "Hop on"}]})

        products = await make_client(handler).fetch_category_products(292858, 50, 100)

        assert products[0].product_code == "PWQF1Y"

    @pytest.mark.asyncio
    async def test_fetch_product_not_found(self):
        client = make_client(lambda request: httpx.Response(404, json={}))
        assert await client.fetch_product("NOPE") is None

    @pytest.mark.asyncio
    async def test_fetch_product(self):
        def handler(request):
            return httpx.Response(200, json={"product": {"productCode": "PWQF1Y", "name": "Hop on", "extra": 1}})

        product = await make_client(handler).fetch_product("PWQF1Y")

        assert product.name == "Hop on"
        assert product.model_dump(by_alias=True)["extra"] == 1

    @pytest.mark.asyncio
    async def test_fetch_availability(self):
        def handler(request):
            assert request.url.params["productCode"] == "PWQF1Y"
            assert request.url.params["startTime"] == "2025-01-01"
            assert request.url.params["participants"] == "2"
            return httpx.Response(200, json={"sessions": [
                {"id": 1, "startTimeLocal": "2025-01-01 09:00:00", "seatsAvailable": 12},
            ]})

        sessions = await make_client(handler).fetch_availability("PWQF1Y", "2025-01-01", "2025-01-02", 2)

        assert sessions[0].seats_available == 12

    @pytest.mark.asyncio
    async def test_fetch_pickups_maps_names(self):
        def handler(request):
            return httpx.Response(200, json={"pickupLocations": [
                {"id": 7, "name": "Brisbane Marriott", "pickupTime": "07:00"},
            ]})

        pickups = await make_client(handler).fetch_pickups("PWQF1Y")

        assert pickups[0].location_name == "Brisbane Marriott"
        assert pickups[0].id == "7"

    @pytest.mark.asyncio
    async def test_fetch_pickups_not_found_is_empty(self):
        client = make_client(lambda request: httpx.Response(404))
        assert await client.fetch_pickups("PWQF1Y") == []

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        client = make_client(lambda request: httpx.Response(200, json={}), api_key=None)
        assert client.configured is False
        with pytest.raises(ConfigurationMissingError):
            await client.fetch_categories()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500, json={}),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json=[1, 2]),
        httpx.Response(200, json={"requestStatus": {"success": False, "error": {"errorMessage": "bad key"}}}),
        httpx.Response(200, json={"products": [{"name": "missing code"}]}),
    ])
    async def test_bad_responses_raise_upstream_unavailable(self, response):
        client = make_client(lambda request: response)
        with pytest.raises(UpstreamUnavailableError):
            await client.fetch_products()

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await make_client(handler).fetch_products()

        assert exc_info.value.service == "rezdy"
        assert exc_info.value.status_code == 502

"""Resource-oriented wrappers over ApiClient.

Each class maps platform operations onto endpoint paths and holds no
state besides the client.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sellerdesk.core.services.api_client import ApiClient
from sellerdesk.domain.models.common import PaginatedResponse

ResourceId = Union[int, str]


class ShopsAPI:
    """Shop endpoints."""

    def __init__(self, client: ApiClient):
        self.client = client

    async def get_shop(self, shop_id: ResourceId) -> Dict[str, Any]:
        return await self.client.get(f"/application/shops/{shop_id}")

    async def get_shop_by_owner_user_id(self, user_id: ResourceId) -> Dict[str, Any]:
        return await self.client.get(f"/application/users/{user_id}/shops")

    async def find_shops(self, shop_name: str, limit: int = 25, offset: int = 0) -> PaginatedResponse:
        return await self.client.get_paginated(
            "/application/shops", {"shop_name": shop_name, "limit": limit, "offset": offset}
        )

    async def update_shop(self, shop_id: ResourceId, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.client.put(f"/application/shops/{shop_id}", dict(data))


class ListingsAPI:
    """Listing endpoints."""

    def __init__(self, client: ApiClient):
        self.client = client

    async def get_listing(self, listing_id: ResourceId, includes: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        params = {"includes": ",".join(includes)} if includes else None
        return await self.client.get(f"/application/listings/{listing_id}", params)

    async def get_listings_by_shop(
        self, shop_id: ResourceId, params: Optional[Mapping[str, Any]] = None
    ) -> PaginatedResponse:
        return await self.client.get_paginated(f"/application/shops/{shop_id}/listings", params)

    async def get_all_listings_by_shop(
        self, shop_id: ResourceId, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Every listing of a shop, following pagination."""
        return await self.client.get_all_pages(f"/application/shops/{shop_id}/listings", filters)

    async def get_active_listings_by_shop(
        self, shop_id: ResourceId, params: Optional[Mapping[str, Any]] = None
    ) -> PaginatedResponse:
        return await self.get_listings_by_shop(shop_id, {**(params or {}), "state": "active"})

    async def create_listing(self, shop_id: ResourceId, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.client.post(f"/application/shops/{shop_id}/listings", dict(data))

    async def update_listing(self, listing_id: ResourceId, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.client.patch(f"/application/listings/{listing_id}", dict(data))

    async def delete_listing(self, listing_id: ResourceId) -> None:
        await self.client.delete(f"/application/listings/{listing_id}")


class ReceiptsAPI:
    """Order (receipt) endpoints."""

    def __init__(self, client: ApiClient):
        self.client = client

    async def get_shop_receipts(
        self, shop_id: ResourceId, params: Optional[Mapping[str, Any]] = None
    ) -> PaginatedResponse:
        return await self.client.get_paginated(f"/application/shops/{shop_id}/receipts", params)

    async def get_all_shop_receipts(
        self, shop_id: ResourceId, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        return await self.client.get_all_pages(f"/application/shops/{shop_id}/receipts", filters)

    async def get_receipt(self, shop_id: ResourceId, receipt_id: ResourceId) -> Dict[str, Any]:
        return await self.client.get(f"/application/shops/{shop_id}/receipts/{receipt_id}")

    async def update_receipt(
        self, shop_id: ResourceId, receipt_id: ResourceId, data: Mapping[str, Any]
    ) -> Dict[str, Any]:
        return await self.client.put(f"/application/shops/{shop_id}/receipts/{receipt_id}", dict(data))

    async def create_shipment(
        self, shop_id: ResourceId, receipt_id: ResourceId, data: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Adds tracking information to a receipt."""
        return await self.client.post(
            f"/application/shops/{shop_id}/receipts/{receipt_id}/tracking", dict(data)
        )


class UsersAPI:
    """User endpoints."""

    def __init__(self, client: ApiClient):
        self.client = client

    async def get_me(self) -> Dict[str, Any]:
        return await self.client.get("/application/users/me")

    async def get_user(self, user_id: ResourceId) -> Dict[str, Any]:
        return await self.client.get(f"/application/users/{user_id}")


class SellerDeskSDK:
    """Bundles the resource APIs around one ApiClient."""

    def __init__(self, client: ApiClient):
        self.client = client
        self.shops = ShopsAPI(client)
        self.listings = ListingsAPI(client)
        self.receipts = ReceiptsAPI(client)
        self.users = UsersAPI(client)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "SellerDeskSDK":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

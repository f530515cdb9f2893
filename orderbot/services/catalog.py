from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import httpx

from orderbot.logging_config import get_logger
from orderbot.services.errors import CatalogUnavailable
from orderbot.services.matching import best_match

logger = get_logger("catalog")

T = TypeVar("T")


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class MenuItem:
    id: str
    name: str
    price: Decimal
    category_id: str
    currency: str = "SAR"
    description: str | None = None
    image_url: str | None = None


@dataclass(frozen=True)
class Branch:
    id: str
    name: str
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True)
class CategoryPage:
    categories: list[Category]
    page: int
    total_pages: int

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


class ScopeKind(str, Enum):
    CATEGORIES = "categories"
    ITEMS = "items"


@dataclass(frozen=True)
class CatalogScope:
    """What the customer is currently looking at; fuzzy lookups never leave it."""

    kind: ScopeKind
    category_id: str | None = None


def paginate(entries: list, page: int, page_size: int) -> tuple[list, int, int]:
    total_pages = max(1, math.ceil(len(entries) / page_size))
    page = min(max(page, 1), total_pages)
    start = (page - 1) * page_size
    return entries[start:start + page_size], page, total_pages


class CatalogProvider(ABC):
    """Read-only menu access for one process, keyed by tenant."""

    @abstractmethod
    async def list_categories(self, tenant_id: str, page: int = 1, page_size: int = 10) -> CategoryPage:
        pass

    @abstractmethod
    async def list_items(self, tenant_id: str, category_id: str) -> list[MenuItem]:
        pass

    @abstractmethod
    async def get_item(self, tenant_id: str, item_id: str) -> Optional[MenuItem]:
        pass

    async def find_by_fuzzy_name(
        self, tenant_id: str, scope: CatalogScope, text: str
    ) -> Category | MenuItem | None:
        if scope.kind == ScopeKind.CATEGORIES:
            first = await self.list_categories(tenant_id, page=1, page_size=1000)
            choices = {category.id: category.name for category in first.categories}
            match_id = best_match(text, choices)
            return next((c for c in first.categories if c.id == match_id), None)

        if scope.category_id is None:
            return None
        items = await self.list_items(tenant_id, scope.category_id)
        match_id = best_match(text, {item.id: item.name for item in items})
        return next((item for item in items if item.id == match_id), None)


class BranchRegistry(ABC):
    @abstractmethod
    async def list_branches(self, tenant_id: str) -> list[Branch]:
        pass

    async def get_branch(self, tenant_id: str, branch_id: str) -> Optional[Branch]:
        branches = await self.list_branches(tenant_id)
        return next((branch for branch in branches if branch.id == branch_id), None)


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0))


class StaticCatalog(CatalogProvider, BranchRegistry):
    """Catalog and branches held in memory, loaded from the tenants YAML."""

    def __init__(self, data: dict[str, dict], default_currency: str = "SAR"):
        self._categories: dict[str, list[Category]] = {}
        self._items: dict[str, dict[str, list[MenuItem]]] = {}
        self._branches: dict[str, list[Branch]] = {}

        for tenant_id, tenant_data in data.items():
            currency = tenant_data.get("currency", default_currency)
            self._categories[tenant_id] = []
            self._items[tenant_id] = {}
            for raw_category in tenant_data.get("categories") or []:
                category = Category(
                    id=str(raw_category["id"]),
                    name=raw_category["name"],
                    description=raw_category.get("description"),
                )
                self._categories[tenant_id].append(category)
                self._items[tenant_id][category.id] = [
                    MenuItem(
                        id=str(raw_item["id"]),
                        name=raw_item["name"],
                        price=_to_decimal(raw_item.get("price")),
                        category_id=category.id,
                        currency=raw_item.get("currency", currency),
                        description=raw_item.get("description"),
                        image_url=raw_item.get("image_url"),
                    )
                    for raw_item in raw_category.get("items") or []
                ]
            self._branches[tenant_id] = [
                Branch(
                    id=str(raw_branch["id"]),
                    name=raw_branch["name"],
                    address=raw_branch.get("address"),
                    latitude=raw_branch.get("latitude"),
                    longitude=raw_branch.get("longitude"),
                )
                for raw_branch in tenant_data.get("branches") or []
            ]

    async def list_categories(self, tenant_id: str, page: int = 1, page_size: int = 10) -> CategoryPage:
        entries, page, total_pages = paginate(self._categories.get(tenant_id, []), page, page_size)
        return CategoryPage(categories=entries, page=page, total_pages=total_pages)

    async def list_items(self, tenant_id: str, category_id: str) -> list[MenuItem]:
        return list(self._items.get(tenant_id, {}).get(category_id, []))

    async def get_item(self, tenant_id: str, item_id: str) -> Optional[MenuItem]:
        for items in self._items.get(tenant_id, {}).values():
            for item in items:
                if item.id == item_id:
                    return item
        return None

    async def list_branches(self, tenant_id: str) -> list[Branch]:
        return list(self._branches.get(tenant_id, []))


def _first_text(raw: dict, *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if value:
            return str(value)
    return None


def _as_list(data: Any) -> list[dict]:
    if isinstance(data, list):
        return data
    return [data] if data else []


def _effective_price(raw: dict) -> Decimal:
    """Discounted price when the product carries one, list price otherwise."""
    price_after = raw.get("priceAfter")
    if price_after not in (None, ""):
        return _to_decimal(price_after)
    return _to_decimal(raw.get("price"))


def _optional_float(value: Any) -> float | None:
    return float(value) if value not in (None, "") else None


def _category_from_row(raw: dict) -> Category:
    return Category(
        id=str(raw["id"]),
        name=_first_text(raw, "nameAr", "nameEn", "name") or str(raw["id"]),
        description=_first_text(raw, "descriptionAr", "descriptionEn", "description"),
    )


def _branch_from_row(raw: dict) -> Branch:
    return Branch(
        id=str(raw["id"]),
        name=_first_text(raw, "nameAr", "nameEn", "name") or str(raw["id"]),
        address=_first_text(raw, "district", "address"),
        latitude=_optional_float(raw.get("latitude")),
        longitude=_optional_float(raw.get("longitude")),
    )


class HttpCatalogClient(CatalogProvider, BranchRegistry):
    """Merchant catalog REST API (categories, products, branches)."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout: float = 5.0,
        currency: str = "SAR",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.currency = currency
        self.transport = transport
        self._item_cache: dict[tuple[str, str], MenuItem] = {}

    async def _get(self, tenant_id: str, operation: str, path: str, params: dict | None = None) -> Any:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = self.api_key
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, params=params, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as exc:
            logger.warning(
                "Catalog request timed out",
                extra={"context": {"tenant_id": tenant_id, "operation": operation}},
            )
            raise CatalogUnavailable(tenant_id, operation, "timeout") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Catalog request failed",
                extra={"context": {"tenant_id": tenant_id, "operation": operation, "error": str(exc)}},
            )
            raise CatalogUnavailable(tenant_id, operation, str(exc)) from exc

    def _map_rows(self, tenant_id: str, operation: str, data: Any, build: Callable[[dict], T]) -> list[T]:
        try:
            return [build(raw) for raw in _as_list(data)]
        except (KeyError, TypeError, AttributeError, ValueError, ArithmeticError) as exc:
            logger.error(
                "Catalog payload malformed",
                extra={
                    "context": {
                        "tenant_id": tenant_id,
                        "operation": operation,
                        "error": f"{type(exc).__name__}: {exc}",
                    }
                },
            )
            raise CatalogUnavailable(tenant_id, operation, "malformed payload") from exc

    async def list_categories(self, tenant_id: str, page: int = 1, page_size: int = 10) -> CategoryPage:
        data = await self._get(tenant_id, "list_categories", f"merchants/{tenant_id}/categories")
        categories = self._map_rows(tenant_id, "list_categories", data, _category_from_row)
        entries, page, total_pages = paginate(categories, page, page_size)
        return CategoryPage(categories=entries, page=page, total_pages=total_pages)

    async def list_items(self, tenant_id: str, category_id: str) -> list[MenuItem]:
        data = await self._get(tenant_id, "list_items", f"categories/{category_id}/products")

        def build(raw: dict) -> MenuItem:
            return MenuItem(
                id=str(raw["id"]),
                name=_first_text(raw, "nameAr", "nameEn", "name") or str(raw["id"]),
                price=_effective_price(raw),
                category_id=category_id,
                currency=raw.get("currency") or self.currency,
                description=_first_text(raw, "descriptionAr", "descriptionEn", "description"),
                image_url=_first_text(raw, "avatar", "imageUrl"),
            )

        items = self._map_rows(tenant_id, "list_items", data, build)
        for item in items:
            self._item_cache[(tenant_id, item.id)] = item
        return items

    async def get_item(self, tenant_id: str, item_id: str) -> Optional[MenuItem]:
        return self._item_cache.get((tenant_id, item_id))

    async def list_branches(self, tenant_id: str) -> list[Branch]:
        data = await self._get(tenant_id, "list_branches", f"merchants/{tenant_id}/branches")
        return self._map_rows(tenant_id, "list_branches", data, _branch_from_row)

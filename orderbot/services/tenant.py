from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from orderbot.logging_config import get_logger
from orderbot.services.errors import UnknownTenant

logger = get_logger("tenant")


@dataclass(frozen=True)
class TenantContext:
    """Per-message, read-only view of one restaurant's bot configuration."""

    tenant_id: str
    name: str
    bot_enabled: bool = True
    synthetic_merchant: bool = False
    support_contact: Optional[str] = None
    app_link: Optional[str] = None
    currency: str = "SAR"
    min_order_total: Decimal = Decimal("0")
    delivery_radius_km: float = 15.0


class TenantRegistry(ABC):
    @abstractmethod
    async def get(self, tenant_id: str) -> TenantContext:
        """Return the tenant's current context. Raises UnknownTenant."""


@lru_cache(maxsize=8)
def _load_yaml(path: str) -> dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Tenants file must be a mapping: {path}")
    return data


def load_tenants_file(path: str) -> dict[str, dict]:
    return dict(_load_yaml(path).get("tenants") or {})


def tenant_from_dict(tenant_id: str, raw: dict, default_currency: str = "SAR") -> TenantContext:
    return TenantContext(
        tenant_id=tenant_id,
        name=raw.get("name") or tenant_id,
        bot_enabled=bool(raw.get("bot_enabled", True)),
        synthetic_merchant=bool(raw.get("synthetic_merchant", False)),
        support_contact=raw.get("support_contact"),
        app_link=raw.get("app_link"),
        currency=raw.get("currency") or default_currency,
        min_order_total=Decimal(str(raw.get("min_order_total") or 0)),
        delivery_radius_km=float(raw.get("delivery_radius_km") or 15.0),
    )


class InMemoryTenantRegistry(TenantRegistry):
    def __init__(self, tenants: dict[str, TenantContext]):
        self._tenants = dict(tenants)

    @classmethod
    def from_dict(cls, data: dict[str, dict], default_currency: str = "SAR") -> "InMemoryTenantRegistry":
        return cls(
            {
                tenant_id: tenant_from_dict(tenant_id, raw or {}, default_currency)
                for tenant_id, raw in data.items()
            }
        )

    async def get(self, tenant_id: str) -> TenantContext:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise UnknownTenant(tenant_id)
        return tenant

    def update(self, tenant: TenantContext) -> None:
        """Replace a tenant's context; the next message sees the new flags."""
        self._tenants[tenant.tenant_id] = tenant
        logger.info(
            "Tenant context updated",
            extra={
                "context": {
                    "tenant_id": tenant.tenant_id,
                    "bot_enabled": tenant.bot_enabled,
                    "synthetic_merchant": tenant.synthetic_merchant,
                }
            },
        )

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from orderbot.logging_config import get_logger
from orderbot.services.catalog import Branch, BranchRegistry
from orderbot.services.errors import CatalogUnavailable, GeocodeError
from orderbot.services.session_state import Coordinate
from orderbot.services.tenant import TenantContext

logger = get_logger("geocoding")

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class DeliveryEligibility:
    deliverable: bool
    address: str
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    distance_km: Optional[float] = None


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    lat1, lon1, lat2, lon2 = map(math.radians, (a.latitude, a.longitude, b.latitude, b.longitude))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def nearest_branch(coordinate: Coordinate, branches: list[Branch]) -> tuple[Optional[Branch], Optional[float]]:
    best = None
    best_distance = None
    for branch in branches:
        if branch.latitude is None or branch.longitude is None:
            continue
        distance = haversine_km(coordinate, Coordinate(branch.latitude, branch.longitude))
        if best_distance is None or distance < best_distance:
            best, best_distance = branch, distance
    return best, best_distance


class GeocodingProvider(ABC):
    @abstractmethod
    async def reverse_or_validate(self, tenant: TenantContext, coordinate: Coordinate) -> DeliveryEligibility:
        """Resolve a readable address and delivery coverage. Raises GeocodeError."""


class NominatimGeocoder(GeocodingProvider):
    """Reverse geocoding via Nominatim; coverage is the nearest branch within the tenant radius."""

    def __init__(
        self,
        branches: BranchRegistry,
        base_url: str,
        user_agent: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.branches = branches
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport = transport

    async def _reverse(self, coordinate: Coordinate) -> str:
        params = {
            "format": "json",
            "lat": coordinate.latitude,
            "lon": coordinate.longitude,
            "accept-language": "ar",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(
                    f"{self.base_url}/reverse", params=params, headers={"User-Agent": self.user_agent}
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise GeocodeError("Reverse geocoding timed out", timed_out=True) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise GeocodeError(f"Reverse geocoding failed: {exc}") from exc

        if isinstance(data, dict) and data.get("display_name"):
            return str(data["display_name"])
        return f"{coordinate.latitude:.5f}, {coordinate.longitude:.5f}"

    async def reverse_or_validate(self, tenant: TenantContext, coordinate: Coordinate) -> DeliveryEligibility:
        if not coordinate.is_valid():
            raise GeocodeError(f"Coordinate out of range: {coordinate}")

        address = await self._reverse(coordinate)
        try:
            branches = await self.branches.list_branches(tenant.tenant_id)
        except CatalogUnavailable as exc:
            raise GeocodeError(f"Branch lookup failed: {exc}") from exc

        branch, distance = nearest_branch(coordinate, branches)
        deliverable = branch is not None and distance <= tenant.delivery_radius_km
        logger.info(
            "Delivery coverage checked",
            extra={
                "context": {
                    "tenant_id": tenant.tenant_id,
                    "deliverable": deliverable,
                    "branch_id": branch.id if branch else None,
                    "distance_km": round(distance, 2) if distance is not None else None,
                }
            },
        )
        return DeliveryEligibility(
            deliverable=deliverable,
            address=address,
            branch_id=branch.id if deliverable else None,
            branch_name=branch.name if deliverable else None,
            distance_km=distance,
        )

import ipaddress
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .database import Database
from .models import LOCAL_NETWORK, GeoInfo

logger = logging.getLogger(__name__)


def is_private_address(ip_address: str) -> bool:
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


class Geolocator:
    """Resolve client addresses to a city/region/country, cached in ip_cache."""

    def __init__(
        self,
        db: Database,
        base_url: str = "http://ip-api.com/json",
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.base_url = base_url.rstrip("/")
        self.enabled = enabled
        self.client = client or httpx.AsyncClient(timeout=5.0)

    async def lookup(self, ip_address: Optional[str]) -> GeoInfo:
        """Never raises; unresolvable addresses yield empty fields."""
        if not ip_address or not self.enabled:
            return GeoInfo()
        if is_private_address(ip_address):
            return GeoInfo(city=LOCAL_NETWORK, region=LOCAL_NETWORK, country=LOCAL_NETWORK)

        try:
            cached = await self.db.get_cached_geo(ip_address)
            if cached:
                return cached
        except Exception as e:
            logger.warning(f"Geolocation cache read failed for {ip_address}: {e}")

        try:
            response = await self.client.get(
                f"{self.base_url}/{ip_address}",
                params={"fields": "status,message,country,countryCode,regionName,city"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Geolocation lookup failed for {ip_address}: {e}")
            return GeoInfo()

        if data.get("status") != "success":
            logger.warning(f"Geolocation lookup failed for {ip_address}: {data.get('message')}")
            return GeoInfo()

        geo = GeoInfo(
            city=data.get("city"),
            region=data.get("regionName"),
            country=data.get("country"),
            country_code=data.get("countryCode"),
        )
        try:
            await self.db.cache_geo(ip_address, geo, datetime.now(timezone.utc))
        except Exception as e:
            logger.warning(f"Could not cache geolocation for {ip_address}: {e}")
        return geo

    async def close(self) -> None:
        await self.client.aclose()

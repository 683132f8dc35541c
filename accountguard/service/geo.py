from __future__ import annotations

import ipaddress
from typing import Iterable, Mapping, Optional

from accountguard.logging import get_logger
from accountguard.storage.models import GeoLocation

logger = get_logger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def _parse_network(value: str) -> Optional[IPNetwork]:
    try:
        return ipaddress.ip_network(value.strip(), strict=False)
    except ValueError:
        logger.warning("invalid_network_entry", entry=value)
        return None


def _parse_ip(value: Optional[str]):
    if not value:
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


class GeoResolver:
    """Resolve a client IP to a coarse ``GeoLocation``.

    Sources, in order: a country header set by a trusted edge proxy, then a
    static ``cidr=COUNTRY[/City]`` table. Unresolvable addresses return None
    and the location-based risk factors are skipped for that attempt.
    """

    def __init__(
        self,
        networks: Iterable[str] = (),
        *,
        country_header: Optional[str] = None,
    ) -> None:
        self.country_header = country_header
        self._table: list[tuple[IPNetwork, GeoLocation]] = []
        for entry in networks:
            cidr, sep, place = entry.partition("=")
            if not sep or not place.strip():
                logger.warning("invalid_geoip_entry", entry=entry)
                continue
            network = _parse_network(cidr)
            if network is None:
                continue
            country, _, city = place.strip().partition("/")
            self._table.append(
                (network, GeoLocation(country=country.strip().upper(), city=city.strip() or None))
            )
        # Most specific prefix first
        self._table.sort(key=lambda item: item[0].prefixlen, reverse=True)

    def resolve(
        self, ip: Optional[str], headers: Optional[Mapping[str, str]] = None
    ) -> Optional[GeoLocation]:
        if self.country_header and headers:
            country = (headers.get(self.country_header) or "").strip().upper()
            # XX / T1 are the conventional "unknown" / Tor markers
            if country and country not in {"XX", "T1"}:
                return GeoLocation(country=country)
        address = _parse_ip(ip)
        if address is None:
            return None
        for network, location in self._table:
            if address.version == network.version and address in network:
                return GeoLocation(country=location.country, city=location.city)
        return None


class IPReputation:
    """Static known-bad list of addresses and networks."""

    def __init__(self, entries: Iterable[str] = ()) -> None:
        self._networks = [n for n in (_parse_network(e) for e in entries if e.strip()) if n]

    def is_known_bad(self, ip: Optional[str]) -> bool:
        address = _parse_ip(ip)
        if address is None:
            return False
        return any(
            address.version == network.version and address in network
            for network in self._networks
        )

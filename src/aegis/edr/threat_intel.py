"""Threat intelligence table for Aegis Guard.

Known-bad IPs (exact or CIDR ranges) and domains with a threat label and a
source. Private, loopback, link-local and reserved addresses are exempt from
lookup, so a hit is never reported for internal traffic even when such an
address has been added to the table.

Entries can be added at runtime, persisted as JSON, and refreshed from
plain-text blocklists.
"""

import asyncio
import ipaddress
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import aiohttp

logger = logging.getLogger("aegis.edr.threat_intel")

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

_EXEMPT_NETWORKS = [
    ipaddress.ip_network(n)
    for n in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "0.0.0.0/8",
        "240.0.0.0/4",
        "255.255.255.255/32",
        "::1/128",
        "::/128",
        "fc00::/7",
        "fe80::/10",
        "fec0::/10",
    )
]


class IndicatorType(Enum):
    """Type of indicator held in the table."""
    IP = "ip"
    CIDR = "cidr"
    DOMAIN = "domain"


@dataclass
class ThreatIntelEntry:
    """A known-bad indicator."""
    indicator: str
    threat_type: str  # scanner, c2, botnet, malware, ...
    source: str
    indicator_type: IndicatorType = IndicatorType.IP
    confidence: int = 85  # 0-100
    last_seen: Optional[str] = None
    description: Optional[str] = None
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator": self.indicator,
            "threat_type": self.threat_type,
            "source": self.source,
            "indicator_type": self.indicator_type.value,
            "confidence": self.confidence,
            "last_seen": self.last_seen,
            "description": self.description,
            "added_at": self.added_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ThreatIntelEntry":
        return cls(
            indicator=data["indicator"],
            threat_type=data.get("threat_type", "unknown"),
            source=data.get("source", "unknown"),
            indicator_type=IndicatorType(data.get("indicator_type", "ip")),
            confidence=data.get("confidence", 85),
            last_seen=data.get("last_seen"),
            description=data.get("description"),
            added_at=datetime.fromisoformat(data["added_at"]) if data.get("added_at") else datetime.now(timezone.utc),
        )


# Well-known scanner ranges plus documentation ranges used as stand-ins for C2 infrastructure
BUILTIN_ENTRIES = [
    ("185.220.101.0/24", "scanner", "tor-exit-nodes", None),
    ("185.220.102.0/24", "scanner", "tor-exit-nodes", None),
    ("89.248.167.0/24", "scanner", "recyber", None),
    ("198.235.24.0/24", "scanner", "shadowserver", None),
    ("71.6.135.0/24", "scanner", "censys", None),
    ("203.0.113.0/24", "c2", "abuse-ch", "2025-01-15"),
    ("198.51.100.0/24", "c2", "abuse-ch", "2025-02-01"),
    ("192.0.2.0/24", "botnet", "spamhaus", "2025-01-20"),
    ("100.64.0.0/16", "botnet", "emerging-threats", "2025-01-10"),
    ("233.252.0.0/24", "malware", "malwaredomainlist", "2025-03-01"),
]


def parse_ip(value: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse an address, tolerating IPv6 brackets, zone ids and IPv4-mapped IPv6."""
    value = value.strip().strip("[]").split("%", 1)[0]
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def is_private_address(value: str) -> bool:
    """True for private, loopback, link-local and reserved addresses."""
    address = parse_ip(value)
    if address is None:
        return False
    return any(address in network for network in _EXEMPT_NETWORKS if network.version == address.version)


class ThreatIntelTable:
    """In-memory threat intelligence lookup owned by one engine instance."""

    def __init__(self, include_builtin: bool = True, data_file: Optional[Path] = None):
        """
        Args:
            include_builtin: Seed the table with the builtin entries
            data_file: Optional JSON file to load entries from (and save to)
        """
        self.data_file = data_file

        self._ips: dict[str, ThreatIntelEntry] = {}
        self._networks: list[tuple[IPNetwork, ThreatIntelEntry]] = []
        self._domains: dict[str, ThreatIntelEntry] = {}

        self.stats = {
            "lookups": 0,
            "hits": 0,
            "exempt": 0,
            "feeds_status": {},
        }

        if include_builtin:
            for indicator, threat_type, source, last_seen in BUILTIN_ENTRIES:
                self.add_entry(ThreatIntelEntry(
                    indicator=indicator,
                    threat_type=threat_type,
                    source=source,
                    indicator_type=IndicatorType.CIDR,
                    last_seen=last_seen,
                ))

        if data_file is not None:
            self.load_file(data_file)

    def add_entry(self, entry: ThreatIntelEntry) -> bool:
        """
        Add an entry. The indicator type is inferred from the value.

        Returns:
            True if added, False if the indicator is invalid or already present
        """
        value = entry.indicator.strip().lower()

        if "/" in value:
            try:
                network = ipaddress.ip_network(value, strict=False)
            except ValueError:
                logger.warning(f"Ignoring invalid CIDR indicator: {entry.indicator}")
                return False
            if any(existing == network for existing, _ in self._networks):
                return False
            entry.indicator_type = IndicatorType.CIDR
            self._networks.append((network, entry))
            return True

        address = parse_ip(value)
        if address is not None:
            key = str(address)
            if key in self._ips:
                return False
            entry.indicator_type = IndicatorType.IP
            self._ips[key] = entry
            return True

        domain = value.rstrip(".")
        if not domain or " " in domain:
            logger.warning(f"Ignoring invalid indicator: {entry.indicator!r}")
            return False
        if domain in self._domains:
            return False
        entry.indicator_type = IndicatorType.DOMAIN
        self._domains[domain] = entry
        return True

    def add_ips(self, ips: list[str], threat_type: str, source: str, confidence: int = 85) -> int:
        """Add a batch of IPs; returns how many were new."""
        added = 0
        for ip in ips:
            if self.add_entry(ThreatIntelEntry(
                indicator=ip,
                threat_type=threat_type,
                source=source,
                confidence=confidence,
            )):
                added += 1
        if added:
            logger.info(f"Added {added} IPs from {source}")
        return added

    def remove(self, indicator: str) -> bool:
        value = indicator.strip().lower()
        if "/" in value:
            before = len(self._networks)
            self._networks = [(n, e) for n, e in self._networks if e.indicator.lower() != value]
            return len(self._networks) < before
        address = parse_ip(value)
        if address is not None:
            return self._ips.pop(str(address), None) is not None
        return self._domains.pop(value.rstrip("."), None) is not None

    def check_ip(self, ip: str) -> Optional[ThreatIntelEntry]:
        """Look up an IP; exempt and unparsable addresses never match."""
        self.stats["lookups"] += 1
        address = parse_ip(ip)
        if address is None:
            return None
        if is_private_address(str(address)):
            self.stats["exempt"] += 1
            return None

        entry = self._ips.get(str(address))
        if entry is None:
            entry = next(
                (e for network, e in self._networks
                 if network.version == address.version and address in network),
                None,
            )
        if entry is not None:
            self.stats["hits"] += 1
        return entry

    def check_domain(self, domain: str) -> Optional[ThreatIntelEntry]:
        """Look up a domain; parent domains match their subdomains."""
        self.stats["lookups"] += 1
        labels = domain.strip().lower().rstrip(".").split(".")
        for i in range(len(labels) - 1):
            entry = self._domains.get(".".join(labels[i:]))
            if entry is not None:
                self.stats["hits"] += 1
                return entry
        return None

    def lookup(self, indicator: str) -> Optional[ThreatIntelEntry]:
        """Look up an IP or a domain."""
        if not indicator:
            return None
        if parse_ip(indicator) is not None:
            return self.check_ip(indicator)
        return self.check_domain(indicator)

    def entries(self) -> list[ThreatIntelEntry]:
        return [*self._ips.values(), *(e for _, e in self._networks), *self._domains.values()]

    def __len__(self) -> int:
        return len(self._ips) + len(self._networks) + len(self._domains)

    def load_file(self, path: Path) -> int:
        """Load entries from a JSON list; returns the number added."""
        path = Path(path)
        if not path.exists():
            return 0
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load threat intel from {path}: {e}")
            return 0

        added = sum(1 for item in data if self.add_entry(ThreatIntelEntry.from_dict(item)))
        logger.info(f"Loaded {added} threat intel entries from {path}")
        return added

    def save_file(self, path: Optional[Path] = None) -> None:
        path = Path(path or self.data_file or "threat_intel.json")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps([e.to_dict() for e in self.entries()], indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to save threat intel to {path}: {e}")

    def _parse_ip_list(self, content: str) -> list[str]:
        """One IP per line; comments and trailing columns are ignored."""
        ips = []
        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith(("#", ";")):
                continue
            candidate = line.split()[0]
            if parse_ip(candidate) is not None and not is_private_address(candidate):
                ips.append(candidate)
        return ips

    async def fetch_blocklist(
        self,
        url: str,
        source: Optional[str] = None,
        threat_type: str = "blocklist",
        timeout: float = 60.0,
    ) -> int:
        """
        Download a plain-text IP blocklist and add every public address.

        Returns:
            Number of new entries (0 on any failure)
        """
        source = source or url
        logger.info(f"Fetching blocklist: {url}")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                    if response.status != 200:
                        logger.error(f"Blocklist {url} returned status {response.status}")
                        self.stats["feeds_status"][source] = {
                            "status": "error",
                            "message": f"HTTP {response.status}",
                            "last_attempt": datetime.now(timezone.utc).isoformat(),
                        }
                        return 0
                    content = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to fetch blocklist {url}: {e}")
            self.stats["feeds_status"][source] = {
                "status": "error",
                "message": str(e) or type(e).__name__,
                "last_attempt": datetime.now(timezone.utc).isoformat(),
            }
            return 0

        added = self.add_ips(self._parse_ip_list(content), threat_type, source)
        self.stats["feeds_status"][source] = {
            "status": "success",
            "new_entries": added,
            "last_update": datetime.now(timezone.utc).isoformat(),
        }
        if self.data_file is not None:
            self.save_file()
        return added

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats,
            "entries": len(self),
            "ips": len(self._ips),
            "networks": len(self._networks),
            "domains": len(self._domains),
        }

"""Tests for the threat intelligence table."""

import json

import aiohttp
import pytest

from aegis.edr import threat_intel as threat_intel_module
from aegis.edr.threat_intel import IndicatorType, ThreatIntelEntry, ThreatIntelTable, is_private_address


@pytest.fixture
def table():
    return ThreatIntelTable(include_builtin=False)


class FakeResponse:
    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession without touching the network."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def __call__(self, *args, **kwargs):
        return self

    def get(self, url, **kwargs):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class TestPrivateExemption:
    """Internal addresses are never reported."""

    @pytest.mark.parametrize("ip", ["10.0.0.5", "127.0.0.1", "192.168.1.1", "172.16.4.4", "169.254.1.1", "::1"])
    def test_private_addresses(self, ip):
        assert is_private_address(ip)

    @pytest.mark.parametrize("ip", ["8.8.8.8", "203.0.113.50", "2001:4860:4860::8888"])
    def test_public_addresses(self, ip):
        assert not is_private_address(ip)

    @pytest.mark.parametrize("ip", ["10.0.0.5", "127.0.0.1", "192.168.1.1"])
    def test_inserted_private_address_never_hits(self, table, ip):
        table.add_entry(ThreatIntelEntry(indicator=ip, threat_type="c2", source="manual"))

        assert table.check_ip(ip) is None
        assert table.stats["exempt"] == 1

    def test_private_range_entry_never_hits(self, table):
        table.add_entry(ThreatIntelEntry(indicator="10.0.0.0/8", threat_type="c2", source="manual"))
        assert table.check_ip("10.1.2.3") is None


class TestLookup:
    """IP, CIDR and domain lookups."""

    def test_builtin_ranges(self):
        table = ThreatIntelTable()

        entry = table.check_ip("185.220.101.34")

        assert entry is not None
        assert entry.threat_type == "scanner"
        assert entry.source == "tor-exit-nodes"
        assert table.check_ip("8.8.8.8") is None

    def test_exact_ip(self, table):
        assert table.add_entry(ThreatIntelEntry(indicator="45.33.32.156", threat_type="c2", source="feed"))

        entry = table.check_ip("45.33.32.156")

        assert entry.indicator_type == IndicatorType.IP
        assert table.stats["hits"] == 1

    def test_duplicate_not_added(self, table):
        entry = ThreatIntelEntry(indicator="45.33.32.156", threat_type="c2", source="feed")
        assert table.add_entry(entry)
        assert not table.add_entry(ThreatIntelEntry(indicator="45.33.32.156", threat_type="c2", source="other"))
        assert len(table) == 1

    def test_ipv4_mapped_ipv6(self, table):
        table.add_ips(["45.33.32.156"], "c2", "feed")
        assert table.check_ip("::ffff:45.33.32.156") is not None

    def test_invalid_ip(self, table):
        assert table.check_ip("not-an-ip") is None

    def test_domain_matches_subdomains(self, table):
        table.add_entry(ThreatIntelEntry(indicator="evil.example", threat_type="phishing", source="feed"))

        assert table.check_domain("login.evil.example") is not None
        assert table.check_domain("evil.example.") is not None
        assert table.check_domain("example") is None
        assert table.lookup("evil.example").threat_type == "phishing"

    def test_remove(self, table):
        table.add_ips(["45.33.32.156"], "c2", "feed")
        table.add_entry(ThreatIntelEntry(indicator="203.0.113.0/24", threat_type="c2", source="feed"))

        assert table.remove("45.33.32.156")
        assert table.remove("203.0.113.0/24")
        assert not table.remove("45.33.32.156")
        assert len(table) == 0

    def test_invalid_cidr_rejected(self, table):
        assert not table.add_entry(ThreatIntelEntry(indicator="300.1.1.0/24", threat_type="x", source="y"))


class TestPersistence:
    """JSON round trip through disk."""

    def test_save_and_load(self, tmp_path, table):
        path = tmp_path / "intel.json"
        table.add_ips(["45.33.32.156", "8.8.4.4"], "c2", "feed", confidence=90)
        table.save_file(path)

        loaded = ThreatIntelTable(include_builtin=False, data_file=path)

        assert len(loaded) == 2
        assert loaded.check_ip("8.8.4.4").confidence == 90
        assert json.loads(path.read_text())[0]["source"] == "feed"

    def test_corrupt_file_loads_nothing(self, tmp_path):
        path = tmp_path / "intel.json"
        path.write_text("{not json")

        table = ThreatIntelTable(include_builtin=False, data_file=path)

        assert len(table) == 0


class TestBlocklistFeed:
    """Plain-text blocklists fetched with aiohttp."""

    BLOCKLIST = "# comment\n45.33.32.156\n10.0.0.1\n8.8.4.4 ; trailing\n\nnot-an-ip\n"

    @pytest.mark.asyncio
    async def test_fetch_adds_public_addresses(self, table, monkeypatch):
        session = FakeSession(response=FakeResponse(200, self.BLOCKLIST))
        monkeypatch.setattr(threat_intel_module.aiohttp, "ClientSession", session)

        added = await table.fetch_blocklist("https://feeds.example/ips.txt", source="example")

        assert added == 2
        assert table.check_ip("45.33.32.156").source == "example"
        assert table.stats["feeds_status"]["example"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_http_error_status(self, table, monkeypatch):
        monkeypatch.setattr(threat_intel_module.aiohttp, "ClientSession", FakeSession(response=FakeResponse(503, "")))

        added = await table.fetch_blocklist("https://feeds.example/ips.txt", source="example")

        assert added == 0
        assert table.stats["feeds_status"]["example"]["message"] == "HTTP 503"

    @pytest.mark.asyncio
    async def test_connection_error(self, table, monkeypatch):
        session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        monkeypatch.setattr(threat_intel_module.aiohttp, "ClientSession", session)

        added = await table.fetch_blocklist("https://feeds.example/ips.txt")

        assert added == 0
        assert table.stats["feeds_status"]["https://feeds.example/ips.txt"]["status"] == "error"

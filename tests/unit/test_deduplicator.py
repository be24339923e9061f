"""Unit tests for identity-based deduplication."""

from conftest import VLESS_UUID, trojan_link, vless_link
from models.proxy_model import Endpoint, Protocol
from parser.deduplicator import deduplicate_endpoints
from parser.parser import ProxyParser


def test_cosmetic_variants_collapse_to_first_seen():
    parser = ProxyParser()
    first = vless_link(query="security=tls&sni=a.example.com", name="first")
    second = vless_link(query="security=tls&sni=b.example.com&type=ws", name="second")
    endpoints = [parser.parse_line(line) for line in (first, second, trojan_link())]

    result = deduplicate_endpoints(endpoints)

    assert len(result) == 2
    assert result[0].raw == first
    assert result[1].protocol == Protocol.TROJAN


def test_uuid_case_is_ignored():
    a = Endpoint(Protocol.VLESS, "h.example.com", 443, VLESS_UUID)
    b = Endpoint(Protocol.VLESS, "h.example.com", 443, VLESS_UUID.upper())
    assert deduplicate_endpoints([a, b]) == [a]


def test_shadowsocks_method_case_is_ignored():
    a = Endpoint(Protocol.SHADOWSOCKS, "1.2.3.4", 8388, "AES-256-GCM:pw")
    b = Endpoint(Protocol.SHADOWSOCKS, "1.2.3.4", 8388, "aes-256-gcm:pw")
    assert len(deduplicate_endpoints([a, b])) == 1


def test_trojan_password_case_matters():
    a = Endpoint(Protocol.TROJAN, "h.example.com", 443, "Secret")
    b = Endpoint(Protocol.TROJAN, "h.example.com", 443, "secret")
    assert len(deduplicate_endpoints([a, b])) == 2


def test_distinct_port_protocol_or_host_are_kept():
    endpoints = [
        Endpoint(Protocol.VLESS, "h.example.com", 443, VLESS_UUID),
        Endpoint(Protocol.VLESS, "h.example.com", 8443, VLESS_UUID),
        Endpoint(Protocol.VMESS, "h.example.com", 443, VLESS_UUID),
        Endpoint(Protocol.VLESS, "other.example.com", 443, VLESS_UUID),
    ]
    assert deduplicate_endpoints(endpoints) == endpoints


def test_idempotent():
    endpoints = [
        Endpoint(Protocol.TROJAN, "h.example.com", 443, "pw", name="a"),
        Endpoint(Protocol.TROJAN, "h.example.com", 443, "pw", name="b"),
        Endpoint(Protocol.TROJAN, "h.example.com", 444, "pw"),
    ]
    once = deduplicate_endpoints(endpoints)
    assert deduplicate_endpoints(once) == once


def test_empty():
    assert deduplicate_endpoints([]) == []

"""Shared fixtures and fakes for the proxy-sieve test suite."""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Dict, List, Union

import pytest

from models.proxy_model import Endpoint, FailureReason, ProbeResult

VLESS_UUID = "a3482e88-686a-4a58-8126-99c9df64b7bf"
VMESS_UUID = "b831381d-6324-4d53-ad4f-8cda48b30811"


def vless_link(host: str = "host1.example.com", port: int = 443, name: str = "vless-1",
               query: str = "security=reality&sni=www.microsoft.com&pbk=SbVKOEMjK0sIlbwg4akyBg5mL5KZwwB-ed4eEE7YnRc&sid=6ba85179&fp=chrome") -> str:
    return f"vless://{VLESS_UUID}@{host}:{port}?{query}#{name}"


def trojan_link(host: str = "host2.example.com", port: int = 443, password: str = "b-secret",
                name: str = "trojan-1") -> str:
    return f"trojan://{password}@{host}:{port}?sni={host}#{name}"


def ss_link(host: str = "5.6.7.8", port: int = 8388, method: str = "aes-256-gcm",
            password: str = "pass123", name: str = "ss-1") -> str:
    userinfo = base64.urlsafe_b64encode(f"{method}:{password}".encode()).decode().rstrip("=")
    return f"ss://{userinfo}@{host}:{port}#{name}"


def vmess_link(host: str = "Host3.Example.com", port: Union[int, str] = "8443", **extra) -> str:
    data = {
        "v": "2",
        "ps": "vmess-1",
        "add": host,
        "port": port,
        "id": VMESS_UUID,
        "aid": "0",
        "net": "ws",
        "path": "/ws",
        "host": "cdn.example.com",
        "tls": "tls",
    }
    data.update(extra)
    return "vmess://" + base64.b64encode(json.dumps(data).encode()).decode()


@pytest.fixture
def sample_links() -> Dict[str, str]:
    return {
        "vless": vless_link(),
        "trojan": trojan_link(),
        "ss": ss_link(),
        "vmess": vmess_link(),
    }


class FakeProber:
    """
    Stand-in for validator.prober.Prober.

    ``outcomes`` maps endpoint host to a latency (success), a FailureReason,
    or the string "hang" for a probe that never finishes on its own.
    """

    def __init__(self, outcomes: Dict[str, Union[float, FailureReason, str]] | None = None,
                 delay: float = 0.0, default_latency: float = 10.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.default_latency = default_latency
        self.in_flight = 0
        self.max_in_flight = 0
        self.started: List[str] = []
        self.cancelled: List[str] = []

    async def probe(self, endpoint: Endpoint) -> ProbeResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started.append(endpoint.host)
        try:
            outcome = self.outcomes.get(endpoint.host, self.default_latency)
            if outcome == "hang":
                await asyncio.sleep(3600)
            if isinstance(outcome, (int, float)):
                await asyncio.sleep(self.delay)
                return ProbeResult.success(endpoint, float(outcome))
            await asyncio.sleep(self.delay)
            return ProbeResult.failed(endpoint, outcome)
        except asyncio.CancelledError:
            self.cancelled.append(endpoint.host)
            raise
        finally:
            self.in_flight -= 1

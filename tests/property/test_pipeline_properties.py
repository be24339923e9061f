"""Property-based tests for parsing, deduplication, ranking and probe scheduling."""

import asyncio
import string

from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import FakeProber
from models.proxy_model import Endpoint, FailureReason, ProbeBatch, ProbeResult, Protocol
from output.writer import build_subscription_set, group_names
from parser.deduplicator import deduplicate_endpoints
from parser.parser import ProxyParser
from parser.serializer import to_uri
from validator.validator import ProxyValidator

_LABEL = st.text(alphabet=string.ascii_lowercase + string.digits, min_size=1, max_size=12)
hosts = st.builds(lambda parts: ".".join(parts), st.lists(_LABEL, min_size=2, max_size=4))
ports = st.integers(min_value=1, max_value=65535)
uuids = st.uuids().map(str)
names = st.text(max_size=30)
option_keys = st.text(alphabet=string.ascii_letters, min_size=1, max_size=10).filter(
    lambda key: key not in ("v", "ps", "add", "port", "id"))
option_dicts = st.dictionaries(option_keys, st.text(max_size=20), max_size=5)
ss_methods = st.sampled_from(["aes-256-gcm", "aes-128-gcm", "chacha20-ietf-poly1305",
                              "2022-blake3-aes-128-gcm"])


@st.composite
def endpoints(draw):
    protocol = draw(st.sampled_from(list(Protocol)))
    if protocol in (Protocol.VLESS, Protocol.VMESS):
        credential = draw(uuids)
    elif protocol == Protocol.TROJAN:
        credential = draw(st.text(min_size=1, max_size=30))
    else:
        credential = f"{draw(ss_methods)}:{draw(st.text(min_size=1, max_size=30))}"
    return Endpoint(protocol, draw(hosts), draw(ports), credential, draw(option_dicts), draw(names))


@given(endpoints())
def test_serialized_links_parse_back_to_the_same_endpoint(endpoint):
    parser = ProxyParser(sanitize_params=False)
    once = parser.parse_line(to_uri(endpoint))
    assert once == endpoint
    assert parser.parse_line(to_uri(once)) == once


@given(endpoints())
def test_parameter_cleanup_is_idempotent(endpoint):
    parser = ProxyParser(remove_params=["note"])
    once = parser.parse_line(to_uri(endpoint))
    assert parser.parse_line(once.raw) == once
    assert parser.parse_line(to_uri(once)) == once


@given(st.lists(endpoints(), max_size=20))
def test_deduplication_is_idempotent_and_order_preserving(items):
    # duplicate some entries so collisions actually happen
    items = items + items[::2]
    once = deduplicate_endpoints(items)
    assert deduplicate_endpoints(once) == once
    assert len({e.identity for e in once}) == len(once)
    assert {e.identity for e in once} == {e.identity for e in items}
    positions = [next(i for i, e in enumerate(items) if e.identity == kept.identity) for kept in once]
    assert positions == sorted(positions)


@given(st.lists(st.tuples(endpoints(), st.one_of(
    st.floats(min_value=0, max_value=10000, allow_nan=False),
    st.sampled_from(list(FailureReason)))), max_size=25))
def test_groups_are_sorted_and_partitioned(outcomes):
    batch = ProbeBatch([
        ProbeResult.failed(ep, outcome) if isinstance(outcome, FailureReason) else ProbeResult.success(ep, outcome)
        for ep, outcome in outcomes
    ])
    subs = build_subscription_set(batch)
    assert set(subs.groups) == set(group_names())
    for group in group_names():
        latencies = [entry.latency_ms for entry in subs[group]]
        assert latencies == sorted(latencies)
    assert len(subs["all"]) == len(batch.successes())
    for protocol in Protocol:
        assert all(entry.endpoint.protocol == protocol for entry in subs[protocol.value])
    assert sum(len(subs[p.value]) for p in Protocol) == len(subs["all"])


@settings(max_examples=25, deadline=None)
@given(
    st.lists(st.one_of(st.floats(min_value=0, max_value=500, allow_nan=False),
                       st.sampled_from(list(FailureReason)),
                       st.just("hang")), max_size=8),
    st.integers(min_value=1, max_value=5),
)
def test_every_endpoint_gets_exactly_one_result(outcomes, concurrency):
    batch_endpoints = [Endpoint(Protocol.TROJAN, f"h{i}.example.com", 443, "pw") for i in range(len(outcomes))]
    prober = FakeProber({ep.host: outcome for ep, outcome in zip(batch_endpoints, outcomes)})
    validator = ProxyValidator(prober)

    batch = asyncio.run(validator.run(batch_endpoints, concurrency=concurrency, timeout=0.05))

    assert [r.endpoint for r in batch] == batch_endpoints
    for result, outcome in zip(batch, outcomes):
        if outcome == "hang":
            assert result.failure == FailureReason.TIMEOUT
        elif isinstance(outcome, FailureReason):
            assert result.failure == outcome
        else:
            assert result.latency_ms == float(outcome)
    assert prober.max_in_flight <= concurrency
    assert prober.in_flight == 0

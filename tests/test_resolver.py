"""Tests for DNS benchmark and resolver precedence."""

from unittest.mock import patch

import dns.exception
import pytest

from paqet_wrapper.resolver import (
    BENCHMARK_DOMAINS,
    DEFAULT_SERVERS,
    PENALTY_LATENCY_MS,
    PROVIDERS,
    DnsResolverSelector,
    query_latency,
)
from paqet_wrapper.settings import DnsSettings


def fake_query(latencies):
    """Query function answering from a server -> latency map; None times out."""

    def query(server, domain, timeout):
        latency = latencies.get(server)
        if latency is None:
            raise dns.exception.Timeout()
        return latency

    return query


class TestBenchmark:
    def test_sorted_fastest_first(self):
        selector = DnsResolverSelector(query=fake_query({"1.1.1.1": 12.0, "8.8.8.8": 30.0}))

        results = selector.benchmark(["8.8.8.8", "1.1.1.1"])

        assert [r.server for r in results] == ["1.1.1.1", "8.8.8.8"]
        assert results[0].latency_ms == 12.0
        assert results[0].queries == len(BENCHMARK_DOMAINS)

    def test_timeout_scored_with_penalty(self):
        selector = DnsResolverSelector(query=fake_query({}))

        [result] = selector.benchmark(["10.255.255.1"])

        assert result.latency_ms == PENALTY_LATENCY_MS
        assert result.failures == len(BENCHMARK_DOMAINS)
        assert not result.responded

    @pytest.mark.parametrize(
        "order",
        [
            ["10.255.255.1", "9.9.9.9"],
            ["9.9.9.9", "10.255.255.1"],
        ],
    )
    def test_unresponsive_never_outranks_responder(self, order):
        selector = DnsResolverSelector(query=fake_query({"9.9.9.9": 2500.0}))

        results = selector.benchmark(order)

        assert results[0].server == "9.9.9.9"
        assert results[0].responded
        assert results[-1].server == "10.255.255.1"

    def test_partial_failures_count(self):
        def query(server, domain, timeout):
            if domain == "microsoft.com":
                raise OSError("network unreachable")
            return 20.0

        selector = DnsResolverSelector(query=query)

        [result] = selector.benchmark(["1.1.1.1"])

        assert result.failures == 1
        assert result.responded

    def test_duplicate_candidates_measured_once(self):
        calls = []

        def query(server, domain, timeout):
            calls.append(server)
            return 5.0

        selector = DnsResolverSelector(domains=["google.com"], query=query)

        results = selector.benchmark(["1.1.1.1", "1.1.1.1"])

        assert len(results) == 1
        assert calls == ["1.1.1.1"]

    def test_presets_carry_provider_details(self):
        latencies = {preset.primary: 50.0 for preset in PROVIDERS.values()}
        latencies["9.9.9.9"] = 8.0
        selector = DnsResolverSelector(query=fake_query(latencies))

        results = selector.benchmark_presets()

        assert results[0].provider_id == "quad9"
        assert results[0].secondary == "149.112.112.112"
        assert len(results) == len(PROVIDERS)

    def test_auto_select_picks_fastest_preset(self):
        latencies = {preset.primary: 40.0 for preset in PROVIDERS.values()}
        latencies["208.67.222.222"] = 3.0
        selector = DnsResolverSelector(query=fake_query(latencies))

        assert selector.auto_select() == ("opendns", "208.67.222.222", "208.67.220.220")


class TestQueryLatency:
    @patch("paqet_wrapper.resolver.dns.query.udp")
    def test_sends_a_query(self, mock_udp):
        latency = query_latency("1.1.1.1", "google.com", 2.0)

        assert latency >= 0
        message = mock_udp.call_args.args[0]
        assert str(message.question[0].name) == "google.com."
        assert mock_udp.call_args.args[1] == "1.1.1.1"
        assert mock_udp.call_args.kwargs["timeout"] == 2.0


class TestResolve:
    def test_default(self):
        assert DnsResolverSelector.resolve(DnsSettings()) == DEFAULT_SERVERS

    def test_named_preset(self):
        settings = DnsSettings(provider="Quad9")

        assert DnsResolverSelector.resolve(settings) == ("9.9.9.9", "149.112.112.112")

    def test_custom_wins(self):
        settings = DnsSettings(
            provider="custom", custom_primary="192.168.1.53", custom_secondary="192.168.1.54"
        )

        assert DnsResolverSelector.resolve(settings) == ("192.168.1.53", "192.168.1.54")

    def test_custom_secondary_defaults(self):
        settings = DnsSettings(provider="custom", custom_primary="192.168.1.53")

        assert DnsResolverSelector.resolve(settings) == ("192.168.1.53", "1.1.1.1")

    def test_custom_without_servers_falls_back(self):
        assert DnsResolverSelector.resolve(DnsSettings(provider="custom")) == DEFAULT_SERVERS

    def test_unknown_provider_falls_back(self):
        assert DnsResolverSelector.resolve(DnsSettings(provider="nextdns")) == DEFAULT_SERVERS

    def test_invalid_custom_server_rejected(self):
        with pytest.raises(ValueError, match="IPv4"):
            DnsSettings(provider="custom", custom_primary="dns.example.com")

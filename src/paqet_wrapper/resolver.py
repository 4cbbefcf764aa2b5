"""DNS resolver selection: presets, latency benchmark and precedence rules."""

import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import dns.exception
import dns.message
import dns.query
import dns.rdatatype

from .common.logging import get_logger
from .models import DnsBenchmarkResult, DnsPreset
from .settings import DnsSettings

logger = get_logger(__name__)

PROVIDERS: dict[str, DnsPreset] = {
    "cloudflare": DnsPreset(
        name="Cloudflare",
        primary="1.1.1.1",
        secondary="1.0.0.1",
        description="Fastest global DNS, best privacy, DoH/DoT support",
    ),
    "google": DnsPreset(
        name="Google",
        primary="8.8.8.8",
        secondary="8.8.4.4",
        description="Ultra reliable, global coverage, DoH/DoT support",
    ),
    "quad9": DnsPreset(
        name="Quad9",
        primary="9.9.9.9",
        secondary="149.112.112.112",
        description="Security focused, blocks malware domains",
    ),
    "cloudflare-gaming": DnsPreset(
        name="Cloudflare Gaming",
        primary="1.1.1.1",
        secondary="1.0.0.1",
        description="Same as Cloudflare, lowest latency for gaming",
    ),
    "opendns": DnsPreset(
        name="OpenDNS",
        primary="208.67.222.222",
        secondary="208.67.220.220",
        description="Cisco owned, phishing protection",
    ),
}

DEFAULT_SERVERS = ("1.1.1.1", "1.0.0.1")
CUSTOM_SECONDARY_FALLBACK = "1.1.1.1"
BENCHMARK_DOMAINS = ("google.com", "cloudflare.com", "microsoft.com")

# Score for a query that timed out or failed; above any real timeout
PENALTY_LATENCY_MS = 9999.0

QueryFunc = Callable[[str, str, float], float]


def query_latency(server: str, domain: str, timeout: float) -> float:
    """Send one raw A query over UDP and return the round trip in ms.

    Raises:
        dns.exception.DNSException: On timeout or malformed reply
        OSError: If the server is unreachable
    """
    message = dns.message.make_query(domain, dns.rdatatype.A)
    started = time.perf_counter()
    dns.query.udp(message, server, timeout=timeout)
    return (time.perf_counter() - started) * 1000


class DnsResolverSelector:
    """Benchmarks candidate resolvers and resolves the user's DNS choice."""

    def __init__(
        self,
        timeout: float = 3.0,
        domains: Iterable[str] = BENCHMARK_DOMAINS,
        max_workers: int = 8,
        query: QueryFunc | None = None,
    ):
        self.timeout = timeout
        self.domains = tuple(domains)
        self.max_workers = max_workers
        self._query = query or query_latency

    def measure(self, server: str, **details: Any) -> DnsBenchmarkResult:
        """Average latency of server over the benchmark domains."""
        latencies = []
        failures = 0
        for domain in self.domains:
            try:
                latencies.append(self._query(server, domain, self.timeout))
            except (dns.exception.DNSException, OSError, ValueError) as e:
                logger.debug("DNS query failed", server=server, domain=domain, error=str(e))
                latencies.append(PENALTY_LATENCY_MS)
                failures += 1

        average = sum(latencies) / len(latencies) if latencies else PENALTY_LATENCY_MS
        return DnsBenchmarkResult(
            server=server,
            latency_ms=min(average, PENALTY_LATENCY_MS),
            queries=len(self.domains),
            failures=failures,
            **details,
        )

    def _run(self, jobs: list[tuple[str, dict[str, Any]]]) -> list[DnsBenchmarkResult]:
        if not jobs:
            return []
        workers = max(1, min(self.max_workers, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dns-bench") as pool:
            futures = [pool.submit(self.measure, server, **details) for server, details in jobs]
            results = [future.result() for future in futures]
        return sorted(results, key=lambda r: (r.latency_ms, r.failures, r.server))

    def benchmark(self, candidates: Iterable[str]) -> list[DnsBenchmarkResult]:
        """Measure every candidate concurrently, fastest first.

        A candidate that never answers is scored with the penalty latency
        instead of being dropped, so it always sorts after any responder.
        """
        return self._run([(server, {}) for server in dict.fromkeys(candidates)])

    def benchmark_presets(self) -> list[DnsBenchmarkResult]:
        """Benchmark the primary server of every preset."""
        jobs = [
            (
                preset.primary,
                {"provider_id": provider_id, "name": preset.name, "secondary": preset.secondary},
            )
            for provider_id, preset in PROVIDERS.items()
        ]
        results = self._run(jobs)
        for result in results:
            logger.info(
                "DNS benchmark",
                provider=result.name,
                server=result.server,
                latency_ms=round(result.latency_ms, 1),
            )
        return results

    def auto_select(self) -> tuple[str, str, str]:
        """Pick the fastest preset.

        Returns:
            Tuple of (provider id, primary, secondary)
        """
        best = self.benchmark_presets()[0]
        logger.info(
            "DNS auto-selected",
            provider=best.name,
            primary=best.server,
            secondary=best.secondary,
            latency_ms=round(best.latency_ms, 1),
        )
        return best.provider_id or "", best.server, best.secondary or CUSTOM_SECONDARY_FALLBACK

    @staticmethod
    def resolve(settings: DnsSettings) -> tuple[str, str]:
        """DNS servers to force: custom > named preset > default."""
        if settings.provider == "custom" and settings.custom_primary:
            return (
                settings.custom_primary,
                settings.custom_secondary or CUSTOM_SECONDARY_FALLBACK,
            )

        preset = PROVIDERS.get(settings.provider)
        if settings.provider != "auto" and preset is not None:
            return preset.primary, preset.secondary

        return DEFAULT_SERVERS

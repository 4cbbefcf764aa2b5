"""Tests for the LIFO rollback stack."""

import pytest

from paqet_wrapper.models import RouteState
from paqet_wrapper.network.changeset import RouteChangeSet


class TestRouteChangeSet:
    def test_empty(self):
        changes = RouteChangeSet()

        assert len(changes) == 0
        assert not changes
        assert changes.unwind() == []

    def test_unwind_is_lifo(self):
        changes = RouteChangeSet()
        order = []
        for name in ("bridge", "route", "dns"):
            changes.push(name, RouteState.ROUTES_APPLIED, lambda name=name: order.append(name))

        changes.unwind()

        assert order == ["dns", "route", "bridge"]
        assert len(changes) == 0

    def test_apply_pushes_only_after_forward_succeeds(self):
        changes = RouteChangeSet()

        def failing():
            raise RuntimeError("route add failed")

        with pytest.raises(RuntimeError):
            changes.apply("route", RouteState.ROUTES_APPLIED, failing, lambda: None)
        assert len(changes) == 0

        result = changes.apply("route", RouteState.ROUTES_APPLIED, lambda: 7, lambda: None)
        assert result == 7
        assert changes.descriptions == ["route"]

    def test_failed_inverse_does_not_stop_unwind(self):
        changes = RouteChangeSet()
        reverted = []

        def broken():
            raise RuntimeError("element not found")

        changes.push("first", RouteState.ADAPTER_STARTING, lambda: reverted.append("first"))
        changes.push("second", RouteState.ROUTES_APPLIED, broken)
        changes.push("third", RouteState.DNS_FORCED, lambda: reverted.append("third"))

        failures = changes.unwind()

        assert reverted == ["third", "first"]
        assert failures == ["second: element not found"]
        assert len(changes) == 0

    def test_phase_callback_fires_once_per_phase(self):
        changes = RouteChangeSet()
        changes.push("bridge", RouteState.ADAPTER_STARTING, lambda: None)
        changes.push("route a", RouteState.ROUTES_APPLIED, lambda: None)
        changes.push("route b", RouteState.ROUTES_APPLIED, lambda: None)
        changes.push("dns", RouteState.DNS_FORCED, lambda: None)
        phases = []

        changes.unwind(on_phase_done=phases.append)

        assert phases == [
            RouteState.DNS_FORCED,
            RouteState.ROUTES_APPLIED,
            RouteState.ADAPTER_STARTING,
        ]

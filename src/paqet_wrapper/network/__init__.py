"""Host network mutation: routes, adapter, DNS and port exclusions."""

from .bridge import AdapterBridge
from .changeset import ChangeEntry, RouteChangeSet
from .interfaces import NetworkMutator
from .orchestrator import NetworkRouteOrchestrator
from .windows import WindowsNetworkMutator

__all__ = [
    "AdapterBridge",
    "ChangeEntry",
    "RouteChangeSet",
    "NetworkMutator",
    "NetworkRouteOrchestrator",
    "WindowsNetworkMutator",
]

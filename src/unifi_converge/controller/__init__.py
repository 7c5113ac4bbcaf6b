"""Controller adapters."""
from .base import Controller, ControllerConfig, LiveAPI, LiveEntity, LiveStateFetcher
from .memory import InMemoryController
from .unifi import UniFiController

__all__ = [
    "Controller",
    "ControllerConfig",
    "LiveAPI",
    "LiveEntity",
    "LiveStateFetcher",
    "InMemoryController",
    "UniFiController",
]

"""
Traffic Relay: carries partner exchanges through contributor connections.
"""

from .traffic import (
    TrafficRelay,
    HttpxTrafficRelay,
    RelayRequest,
    RelayResponse,
)

__all__ = [
    "TrafficRelay",
    "HttpxTrafficRelay",
    "RelayRequest",
    "RelayResponse",
]

"""Exception hierarchy for beacon_position_server."""

from __future__ import annotations


class PositioningError(Exception):
    """Base exception for all positioning pipeline errors."""


class ConfigError(PositioningError):
    """Invalid configuration value."""


class PayloadError(PositioningError):
    """Broker payload could not be decoded into a position report."""

    def __init__(self, message: str, *, payload: str = "") -> None:
        self.payload = payload
        super().__init__(message)


class InsufficientDataError(PositioningError):
    """Fewer than three usable beacons."""


class DegenerateGeometryError(PositioningError):
    """Beacons are collinear or coincident, the linear system has no unique solution."""


class StoreError(PositioningError):
    """Read or write failure in a CSV-backed store."""

    def __init__(self, message: str, *, store: str = "") -> None:
        self.store = store
        super().__init__(message)

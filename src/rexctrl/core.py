"""
Core constants, link settings and utilities for the Robo Rex BLE controller.
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Nordic UART service used by the Rex firmware
NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # client -> Rex (write)
NUS_RX_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # Rex -> client (notify)

# Advertised names: current firmware first, legacy ESP32-S3 build second
NAME_PREFIXES = ("Robo_Rex", "Robo_Rex_ESP32S3")

# Keep writes under the 20-byte ATT payload of the default MTU
CHUNK_SIZE = 18
CHUNK_PACING_S = 0.002
BUSY_RETRY_DELAY_S = 0.02

# Hold-to-repeat cadence
HOLD_INTERVAL_S = 0.140

SCAN_TIMEOUT_S = 10.0
CONNECT_TIMEOUT_S = 10.0

# Application metadata
__version__ = "0.1.0"
__description__ = "CLI and REPL remote control for the Robo Rex animatronic over BLE"


@dataclass(frozen=True)
class LinkSettings:
    """Transport settings for one controller instance."""

    name_prefixes: Tuple[str, ...] = NAME_PREFIXES
    service_uuid: str = NUS_SERVICE_UUID
    tx_uuid: str = NUS_TX_UUID
    rx_uuid: str = NUS_RX_UUID
    scan_timeout: float = SCAN_TIMEOUT_S
    connect_timeout: float = CONNECT_TIMEOUT_S
    write_with_response: bool = False
    chunk_size: int = CHUNK_SIZE
    chunk_pacing: float = CHUNK_PACING_S
    busy_retry_delay: float = BUSY_RETRY_DELAY_S
    hold_interval: float = HOLD_INTERVAL_S

    @classmethod
    def from_env(cls, base: Optional["LinkSettings"] = None) -> "LinkSettings":
        """Overlay REXCTRL_* environment variables on the defaults.

        Args:
            base: Settings to start from (defaults if None)

        Returns:
            New LinkSettings instance
        """
        settings = base or cls()

        prefixes = os.environ.get("REXCTRL_NAME_PREFIX")
        if prefixes is not None:
            parsed = tuple(p.strip() for p in prefixes.split(",") if p.strip())
            settings = replace(settings, name_prefixes=parsed)

        scan_timeout = os.environ.get("REXCTRL_SCAN_TIMEOUT")
        if scan_timeout:
            settings = replace(settings, scan_timeout=float(scan_timeout))

        connect_timeout = os.environ.get("REXCTRL_CONNECT_TIMEOUT")
        if connect_timeout:
            settings = replace(settings, connect_timeout=float(connect_timeout))

        return settings


class Observers:
    """Callback registry with per-callback failure isolation."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._callbacks: List[Callable[..., Any]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def add(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register a callback.

        Returns:
            Function removing this registration (safe to call twice)
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def notify(self, *args: Any) -> None:
        """Call every callback; one failing never stops the rest."""
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"{self._name} callback error: {e}")

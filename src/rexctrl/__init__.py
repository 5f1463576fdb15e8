"""
RexCtrl - Robo Rex BLE Remote Control Library

A Python library for driving the Robo Rex animatronic over Bluetooth LE.
"""

__version__ = "0.1.0"
__description__ = "CLI and REPL remote control for the Robo Rex animatronic over BLE"

from .codec import CommandPacket
from .controller import LinkManager
from .dispatcher import HoldDispatcher
from .display import DisplayManager
from .write_queue import WriteQueue

__all__ = [
    "CommandPacket",
    "DisplayManager",
    "HoldDispatcher",
    "LinkManager",
    "WriteQueue",
]

"""Domain-specific errors for rexctrl."""


class RexCtrlError(Exception):
    """Base error for rexctrl."""


class UnsupportedTransport(RexCtrlError):
    """Raised when no usable Bluetooth adapter or backend is available."""


class DiscoveryCancelled(RexCtrlError):
    """Raised when discovery ends without a peer being selected."""


class BindingFailed(RexCtrlError):
    """Raised when connect or service/characteristic binding fails."""


class TransportError(RexCtrlError):
    """Base error for outbound writes."""


class NotConnected(TransportError):
    """Raised when a send is attempted without a live connection."""


class TransientBusy(TransportError):
    """Raised when the adapter reports an operation already in progress."""


class WriteFailed(TransportError):
    """Raised when a characteristic write fails for any other reason."""


class PacketError(RexCtrlError, ValueError):
    """Raised when a wire line cannot be parsed into a command packet."""

"""Domain-specific errors for thermoctl."""


class ThermoctlError(Exception):
    """Base error for thermoctl."""


class CatalogValidationError(ThermoctlError):
    """Raised when a register catalog file does not conform to schema or semantics."""


class CatalogLoadError(ThermoctlError):
    """Raised when loading catalog sources fails."""


class ConfigError(ThermoctlError):
    """Raised when the configuration file cannot be read or is invalid."""


class UnknownRegister(ThermoctlError, KeyError):
    """Raised when an attribute name or register code is not in the catalog."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class DeviceResolutionError(ThermoctlError):
    """Raised when a device id cannot be resolved to a known device."""


class LedgerError(ThermoctlError):
    """Raised when a ledger record cannot be found."""


class TransportError(ThermoctlError):
    """Base transport error."""


class DeliveryFailed(TransportError):
    """Raised when a frame could not be delivered to the gateway."""


class TransportConnectError(DeliveryFailed):
    """Raised on gateway connect failures."""


class TransportSendError(DeliveryFailed):
    """Raised when writing the message fails."""


class TransportTimeoutError(DeliveryFailed):
    """Raised when the gateway does not accept the connection in time."""

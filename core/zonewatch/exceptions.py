"""
Zonewatch Custom Exceptions

Simple exception hierarchy for error handling.
"""


class ZonewatchError(Exception):
    """Base exception for Zonewatch."""

    pass


class ConfigurationError(ZonewatchError):
    """Configuration is invalid."""

    pass


class UnknownZoneError(ZonewatchError):
    """Zone or section reference does not exist in the zone table."""

    pass


class MalformedTelemetryError(ZonewatchError):
    """Telemetry payload cannot be parsed."""

    pass


class SinkError(ZonewatchError):
    """Anomaly record could not be persisted."""

    pass


class ChannelError(ZonewatchError):
    """Message channel is unavailable or a message was misused."""

    pass

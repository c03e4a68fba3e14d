"""Exception taxonomy for the spot impact engine."""

from typing import Any, Optional


class SpotImpactError(Exception):
    """Base exception for spot impact analysis errors."""

    pass


class InsufficientDataError(SpotImpactError):
    """No comparable historical periods exist for a reference window."""

    def __init__(self, message: str, window: Optional[str] = None):
        self.window = window
        super().__init__(message)


class ValidationRejection(SpotImpactError):
    """A metric value failed the anomaly validation gate."""

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Rejected {field}={value!r}: {reason}")


class ExternalFetchError(SpotImpactError):
    """Historical or observed telemetry could not be retrieved."""

    def __init__(
        self,
        message: str,
        event_id: Optional[str] = None,
        window: Optional[str] = None,
    ):
        self.event_id = event_id
        self.window = window
        super().__init__(message)


class ConfigurationError(SpotImpactError):
    """Required input or configuration is missing."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

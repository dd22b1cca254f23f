"""Exception hierarchy shared by the attachment and link layers."""

from __future__ import annotations


class MeshLinkError(Exception):
    """Base class for all meshlink errors."""


class ConfigurationError(MeshLinkError):
    """A required setting is missing or still holds a placeholder."""


class LowpanError(MeshLinkError):
    """The LoWPAN interface rejected or failed an operation."""


class NoInterfaceError(LowpanError):
    """The operation needs a LoWPAN interface and none is registered."""

    def __init__(self, message: str = "no LoWPAN interface") -> None:
        super().__init__(message)


class BusyError(LowpanError):
    """A scan or provisioning attempt is already in flight."""

    def __init__(self, message: str = "busy") -> None:
        super().__init__(message)

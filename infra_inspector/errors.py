"""Exception hierarchy shared by clients, collectors and inspectors."""

from __future__ import annotations


class InspectionError(RuntimeError):
    """Base class for every error that aborts an inspection run."""


class ConfigError(InspectionError):
    """Raised when the configuration file or a metric file is invalid."""


class BackendError(InspectionError):
    """Raised when the metrics backend or the inventory API fails a request."""


class DiscoveryError(InspectionError):
    """Raised when instance discovery cannot run."""


class CollectionError(InspectionError):
    """Raised when the collection task group fails as a whole."""


class CollectionCancelled(CollectionError):
    """Raised when a collection run is cancelled or exceeds its deadline."""

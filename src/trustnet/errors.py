"""
Error taxonomy for the trust network.

Structural errors (unknown endpoint, weight out of range, unknown source) are
always surfaced to the caller. Storage and reputation failures wrap whatever
the backend raised so callers can catch one type per collaborator.
"""


class TrustNetError(Exception):
    """Base class for all trustnet errors."""


class UnknownEndpointError(TrustNetError):
    def __init__(self, source_id, target_id) -> None:
        super().__init__(f"unknown endpoint: {source_id} -> {target_id}")
        self.source_id = source_id
        self.target_id = target_id


class WeightOutOfRangeError(TrustNetError):
    def __init__(self, weight) -> None:
        super().__init__(f"weight out of range: {weight!r} (expected 0 <= weight <= 1)")
        self.weight = weight


class SourceNotFoundError(TrustNetError):
    def __init__(self, source_id) -> None:
        super().__init__(f"source not found: {source_id}")
        self.source_id = source_id


class ConnectionNotFoundError(TrustNetError):
    def __init__(self, source_id, target_id) -> None:
        super().__init__(f"connection not found: {source_id} -> {target_id}")
        self.source_id = source_id
        self.target_id = target_id


class ContentNotFoundError(TrustNetError):
    def __init__(self, content_id) -> None:
        super().__init__(f"content not found: {content_id}")
        self.content_id = content_id


class StorageError(TrustNetError):
    """Raised by SourceStore implementations; propagated unchanged by the core."""


class ReputationError(TrustNetError):
    """Raised when the reputation collaborator fails (as opposed to not finding anything)."""

class WabotError(Exception):
    """Base class for errors raised by wabot services."""


class InvalidPayloadError(WabotError):
    """Inbound payload cannot be parsed; acknowledged and never retried."""


class UpstreamUnavailableError(WabotError):
    """An external dependency failed, timed out or returned an unusable answer."""

    def __init__(self, message: str, dependency: str = "unknown"):
        super().__init__(message)
        self.dependency = dependency


class ClassificationUnavailableError(UpstreamUnavailableError):
    """The embedding provider could not produce a vector."""

    def __init__(self, message: str):
        super().__init__(message, dependency="embeddings")

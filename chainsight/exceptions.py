"""Exception hierarchy for the chainsight pipeline."""


class ChainsightError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(ChainsightError):
    """Configuration is missing or inconsistent."""


class ProviderError(ChainsightError):
    """An upstream provider call failed (network, HTTP status or parse)."""

    def __init__(self, provider: str, message: str, status: int = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class SchemaError(ProviderError):
    """A provider response does not match its expected schema."""


class RateLimitedError(ChainsightError):
    """The quota governor denied a request. Never retried within the same pass."""

    def __init__(self, provider: str):
        super().__init__(f"Rate limit exceeded for {provider}")
        self.provider = provider


class StorageUnavailableError(ChainsightError):
    """The persistence layer cannot be reached."""


class NarrativeError(ChainsightError):
    """The narrative analysis provider failed to produce a reply."""


class NarrativeUnavailableError(NarrativeError):
    """The narrative provider could not be reached or answered with a server error."""

from abc import ABC, abstractmethod


class ProviderError(Exception):
    """Base class for upstream model failures."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """The API key was rejected (missing, malformed, expired or revoked)."""


class ProviderRateLimitedError(ProviderError):
    """Upstream quota exhausted for the key in use."""

    retryable = True


class ProviderUnavailableError(ProviderError):
    """Transient upstream failure: 5xx, network error, empty response."""

    retryable = True


class AIProvider(ABC):
    """Abstract base class for text-generation providers."""

    DEFAULT_MODEL: str

    def __init__(self, api_key: str, model: str | None = None):
        self.api_key = api_key
        self._model = model

    @abstractmethod
    async def generate(self, prompt: str, *, system: str = "", model: str | None = None) -> dict:
        """Generate text for a single prompt.

        Args:
            prompt: User-turn content.
            system: Optional system instruction.
            model: Override of the configured model.

        Returns:
            dict with content, tokens_in, tokens_out, model.

        Raises:
            ProviderError subclasses on upstream failure.
        """
        ...

    def get_model(self) -> str:
        return self._model or self.DEFAULT_MODEL

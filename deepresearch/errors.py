from __future__ import annotations


class DeepResearchError(Exception):
    """Base class for application errors."""


class ConfigurationError(DeepResearchError):
    pass


class LLMConfigurationError(ConfigurationError):
    """The LLM request cannot be made (missing key, model or content)."""


class LLMStreamError(DeepResearchError):
    """A stream attempt failed before or during streaming. Retryable."""


class PersistenceError(DeepResearchError):
    pass


class InvalidResultIdError(DeepResearchError):
    pass


class ResultNotFoundError(DeepResearchError):
    pass


class AuthenticationError(DeepResearchError):
    """Request lacks a valid session cookie."""


class RequestTooLargeError(DeepResearchError):
    pass

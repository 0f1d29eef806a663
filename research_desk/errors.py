"""Exception taxonomy shared across the aggregation layer."""

from typing import Any, List, Optional


class ResearchDeskError(Exception):
    """Base class for all errors raised by research_desk."""


class ConfigurationError(ResearchDeskError):
    """A required setting (API key, URL, ...) is missing or invalid."""


class OperationAborted(ResearchDeskError):
    """
    Raised when a run is cancelled through its abort signal.

    Never retried and never substituted with a fallback value.
    """


class InvalidTransitionError(ResearchDeskError):
    """A status change that would move a key backwards or skip a state."""

    def __init__(self, key: str, current: Any, requested: Any) -> None:
        self.key = key
        self.current = current
        self.requested = requested
        super().__init__(
            f"Illegal status transition for '{key}': "
            f"{getattr(current, 'value', current)} -> {getattr(requested, 'value', requested)}"
        )


class ProviderError(ResearchDeskError):
    """
    An upstream provider answered with an error or could not be reached.

    Attributes:
        provider: Provider identifier (e.g. "fmp", "finnhub", "openai")
        status_code: HTTP status if the provider answered, None otherwise
    """

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        self.provider = provider
        self.status_code = status_code
        prefix = f"{provider} error"
        if status_code is not None:
            prefix = f"{provider} error ({status_code})"
        super().__init__(f"{prefix}: {message}")

    @property
    def retryable(self) -> bool:
        """Transport failures, rate limiting and server errors are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class AggregateFetchError(ResearchDeskError):
    """
    A core data slice could not be obtained, so the whole aggregate fetch failed.

    Attributes:
        subject: The symbol (or other subject) the run was for
        failed_keys: Core keys that did not settle with data
        result: The partial AggregateResult (best-effort keys stay pending)
    """

    def __init__(self, subject: str, failed_keys: List[str], result: Any = None) -> None:
        self.subject = subject
        self.failed_keys = list(failed_keys)
        self.result = result
        keys = ", ".join(self.failed_keys)
        super().__init__(f"Could not fetch core data for {subject}: {keys} unavailable")


class AllSourcesFailedError(ResearchDeskError):
    """Every provider contributing to a merged domain failed."""

    def __init__(self, domain: str, errors: dict) -> None:
        self.domain = domain
        self.errors = dict(errors)
        detail = "; ".join(f"{source}: {message}" for source, message in self.errors.items())
        super().__init__(f"All sources failed for {domain}: {detail}")


class MalformedResponseError(ResearchDeskError):
    """Generative output contained no parseable JSON object."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        self.raw_text = raw_text
        super().__init__(message)


class PersistenceError(ResearchDeskError):
    """A store operation (count, eviction, insert, update or delete) failed."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.cause = cause
        message = f"Persistence failure during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)

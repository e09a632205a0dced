"""
Error taxonomy for the AI orchestration engine.

- ProviderError: network / timeout / 429 / 5xx (retryable within an adapter
  and across the fallback list)
- ResponseValidationError: malformed provider payload (terminal for that
  provider, triggers fallback to the next one)
- AuthorizationError: tier not entitled for the caller's subscription
- InsufficientBudgetError: caller cannot afford the minimum tier cost
- AllProvidersFailedError: every provider in the fallback list failed

Authorization and budget errors are raised pre-flight, before any network call.
"""
from typing import Dict, Optional


class AIEngineError(Exception):
    """Base class for engine errors. ``kind`` is the caller-facing error kind."""

    kind = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProviderError(AIEngineError):
    """A provider call failed (network, timeout, rate limit, non-2xx status)."""

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class RateLimitExceededError(ProviderError):
    """Provider's per-minute quota is exhausted for the current bucket."""

    def __init__(self, provider: str, wait_time: float):
        super().__init__(
            f"Rate limit exceeded for {provider}, retry in {wait_time:.1f}s",
            provider=provider,
            status_code=429,
            retryable=True,
        )
        self.wait_time = wait_time


class ResponseValidationError(AIEngineError):
    """Provider answered 2xx but the payload is missing content or usage."""

    kind = "validation_error"

    def __init__(self, message: str, provider: Optional[str] = None, raw_output: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.raw_output = raw_output


class AuthorizationError(AIEngineError):
    kind = "authorization_error"


class InsufficientBudgetError(AIEngineError):
    kind = "insufficient_budget"

    def __init__(self, message: str, required_units: int = 0, available_units: int = 0):
        super().__init__(message)
        self.required_units = required_units
        self.available_units = available_units


class AllProvidersFailedError(AIEngineError):
    """Terminal error carrying the last error seen for each provider tried."""

    kind = "all_providers_failed"

    def __init__(self, errors: Dict[str, str]):
        summary = "; ".join(f"{name}: {err}" for name, err in errors.items()) or "no providers available"
        super().__init__(f"All providers failed ({summary})")
        self.errors = errors

"""
Error taxonomy shared by every layer.

Cache and store failures are absorbed close to where they happen; provider
errors are classified so the retry layer knows which ones are worth repeating.
"""

from typing import Optional


class ParleyError(Exception):
    """Base class for all engine errors"""


class CacheUnavailable(ParleyError):
    """Cache backend could not be reached; callers treat it as a miss"""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class StoreQueryFailed(ParleyError):
    """A message/profile/summary store query failed"""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class ProviderError(ParleyError):
    """Base class for embedding/completion provider failures"""

    def __init__(self, message: str, provider: str = "provider"):
        super().__init__(message)
        self.provider = provider


class ProviderRateLimited(ProviderError):
    """Provider asked us to slow down"""

    def __init__(self, message: str, retry_after: float = 60.0, provider: str = "provider"):
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderClientError(ProviderError):
    """Non-retryable request error (4xx-equivalent)"""

    def __init__(self, message: str, status_code: Optional[int] = None, provider: str = "provider"):
        super().__init__(message, provider)
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Provider kept failing after all retry attempts"""


class CircuitOpenError(ProviderError):
    """Circuit breaker is open; the call was rejected without reaching the provider"""

    def __init__(self, name: str, failure_count: int = 0):
        super().__init__(f"Circuit breaker is open for {name}", provider=name)
        self.failure_count = failure_count


class BudgetExceeded(ParleyError):
    """Spend in the trailing window is over the configured budget"""

    def __init__(self, spent: float, budget: float, window: str = "hourly"):
        super().__init__(f"{window} budget exceeded: ${spent:.4f} > ${budget:.2f}")
        self.spent = spent
        self.budget = budget
        self.window = window


class PromptTestError(ParleyError):
    """Invalid prompt experiment definition or unknown test id"""

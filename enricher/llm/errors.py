from typing import List, Optional, Tuple


class LLMError(Exception):
    pass


class LLMConfigurationError(LLMError):
    """No usable primary provider could be resolved. Fatal for the whole run."""


class LLMAPIError(LLMError):
    """A single provider call failed.

    ``retryable`` tells the retry engine whether another attempt against the
    same provider may succeed. Non-retryable errors still let the fallback
    chain move on to the next provider.
    """

    retryable = False

    def __init__(self, message: str, provider: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class LLMAuthError(LLMAPIError):
    retryable = False


class LLMRateLimitError(LLMAPIError):
    retryable = True


class LLMServerError(LLMAPIError):
    retryable = True


class LLMTimeoutError(LLMAPIError):
    retryable = True


class LLMEmptyResponseError(LLMAPIError):
    retryable = True


RETRYABLE_ERRORS = (LLMRateLimitError, LLMServerError, LLMTimeoutError, LLMEmptyResponseError)


class LLMValidationError(LLMError):
    """Model output could not be parsed, even after repair."""


class LLMProvidersExhaustedError(LLMError):
    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = list(failures)
        detail = ' | '.join(f'{provider}: {err}' for provider, err in self.failures)
        super().__init__(f'All providers failed. {detail}' if detail else 'All providers failed.')

    @property
    def rate_limited(self) -> bool:
        return any(isinstance(err, LLMRateLimitError) for _, err in self.failures)

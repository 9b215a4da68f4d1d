"""
LLM orchestration: provider resolution, adapters, retry/fallback and
tolerant parsing of model output.
"""
from .errors import (
	LLMError,
	LLMConfigurationError,
	LLMAPIError,
	LLMAuthError,
	LLMRateLimitError,
	LLMServerError,
	LLMTimeoutError,
	LLMEmptyResponseError,
	LLMValidationError,
	LLMProvidersExhaustedError,
	RETRYABLE_ERRORS,
)
from .providers import ProviderKind, ProviderConfig, LLMConfig, LLMOverrides, build_llm_config, parse_provider, parse_provider_list
from .adapters import ChatCompletionAdapter, GeminiAdapter, get_adapter, classify_status
from .client import LLMClient, generate_text_with_fallback
from .json_utils import extract_json, parse_tolerant, safe_json_loads, normalize_enrichment, repair_json

__all__ = [
	'LLMError', 'LLMConfigurationError', 'LLMAPIError', 'LLMAuthError', 'LLMRateLimitError',
	'LLMServerError', 'LLMTimeoutError', 'LLMEmptyResponseError', 'LLMValidationError',
	'LLMProvidersExhaustedError', 'RETRYABLE_ERRORS',
	'ProviderKind', 'ProviderConfig', 'LLMConfig', 'LLMOverrides', 'build_llm_config', 'parse_provider', 'parse_provider_list',
	'ChatCompletionAdapter', 'GeminiAdapter', 'get_adapter', 'classify_status',
	'LLMClient', 'generate_text_with_fallback',
	'extract_json', 'parse_tolerant', 'safe_json_loads', 'normalize_enrichment', 'repair_json',
]

"""Utility subpackage shared by the enrichment modules"""

from .logger import (
	get_logger,
	log_request,
	log_error,
	log_llm_call,
	log_provider_fallback,
	log_card_enrichment,
	log_batch_progress,
	log_priority_suggestion,
	set_request_context,
	get_request_context,
)
from .config import Settings
from .text import strip_html, normalize_whitespace, sanitize_for_prompt, truncate

__all__ = [
	'get_logger',
	'log_request',
	'log_error',
	'log_llm_call',
	'log_provider_fallback',
	'log_card_enrichment',
	'log_batch_progress',
	'log_priority_suggestion',
	'set_request_context',
	'get_request_context',
	'Settings',
	'strip_html',
	'normalize_whitespace',
	'sanitize_for_prompt',
	'truncate',
]

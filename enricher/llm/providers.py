"""Provider configuration resolution.

Turns request overrides plus :class:`Settings` into an ordered, de-duplicated
chain of :class:`ProviderConfig` (primary first). Per field the lookup order is
override, provider-specific setting, generic setting, built-in default.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from enricher.utils import Settings, get_logger
from .errors import LLMConfigurationError

LOG = get_logger()


class ProviderKind(str, Enum):
    GEMINI = 'gemini'
    OPENAI = 'openai'
    TOGETHER = 'together'
    OPENAI_COMPATIBLE = 'openai-compatible'


_ALIASES = {
    'gemini': ProviderKind.GEMINI,
    'google': ProviderKind.GEMINI,
    'openai': ProviderKind.OPENAI,
    'together': ProviderKind.TOGETHER,
    'togetherai': ProviderKind.TOGETHER,
    'together-ai': ProviderKind.TOGETHER,
    'openai-compatible': ProviderKind.OPENAI_COMPATIBLE,
    'openai_compatible': ProviderKind.OPENAI_COMPATIBLE,
}

DEFAULT_MODELS = {
    ProviderKind.GEMINI: 'gemini-2.5-flash',
    ProviderKind.OPENAI: 'gpt-4o-mini',
    ProviderKind.TOGETHER: 'meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo',
    ProviderKind.OPENAI_COMPATIBLE: 'gpt-4o-mini',
}

DEFAULT_BASE_URLS = {
    ProviderKind.OPENAI: 'https://api.openai.com',
    ProviderKind.TOGETHER: 'https://api.together.xyz',
}

NO_KEY_MESSAGE = 'No LLM API key configured. Set GEMINI_API_KEY, OPENAI_API_KEY, TOGETHER_API_KEY, or LLM_API_KEY.'


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: ProviderKind
    api_key: str = Field(repr=False)
    model: str
    base_url: Optional[str] = None


class LLMOverrides(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = Field(None, repr=False)
    base_url: Optional[str] = None
    fallback_providers: Optional[List[str]] = None


class LLMConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    providers: List[ProviderConfig]
    max_retries: int = 3
    timeout_s: float = 120.0
    retry_base_delay_s: float = 2.0


def parse_provider(value: Optional[str]) -> ProviderKind:
    if value is None:
        return ProviderKind.GEMINI
    normalized = value.strip().lower()
    if not normalized:
        return ProviderKind.GEMINI
    try:
        return _ALIASES[normalized]
    except KeyError:
        raise LLMConfigurationError(f'Unknown LLM provider: {value}')


def parse_provider_list(value) -> List[ProviderKind]:
    """Accept a comma-separated string or a list of names; keeps first-seen order."""
    if not value:
        return []
    parts = value.split(',') if isinstance(value, str) else list(value)
    providers: List[ProviderKind] = []
    for part in parts:
        if not part or not str(part).strip():
            continue
        kind = parse_provider(str(part))
        if kind not in providers:
            providers.append(kind)
    return providers


def normalize_base_url(value: str) -> str:
    return value.rstrip('/')


def _first(*candidates: Optional[str]) -> Optional[str]:
    for c in candidates:
        if c and c.strip():
            return c.strip()
    return None


def resolve_api_key(kind: ProviderKind, settings: Settings, override: Optional[str] = None) -> Optional[str]:
    specific = {
        ProviderKind.GEMINI: settings.gemini_api_key,
        ProviderKind.OPENAI: settings.openai_api_key,
        ProviderKind.TOGETHER: settings.together_api_key,
        ProviderKind.OPENAI_COMPATIBLE: settings.openai_api_key,
    }[kind]
    return _first(override, specific, settings.llm_api_key)


def resolve_model(kind: ProviderKind, settings: Settings, override: Optional[str] = None) -> str:
    specific = {
        ProviderKind.GEMINI: settings.gemini_model,
        ProviderKind.OPENAI: settings.openai_model,
        ProviderKind.TOGETHER: settings.together_model,
        ProviderKind.OPENAI_COMPATIBLE: None,
    }[kind]
    return _first(override, specific, settings.llm_model) or DEFAULT_MODELS[kind]


def resolve_base_url(kind: ProviderKind, settings: Settings, override: Optional[str] = None) -> Optional[str]:
    if kind == ProviderKind.GEMINI:
        return None
    specific = {
        ProviderKind.OPENAI: settings.openai_base_url,
        ProviderKind.TOGETHER: settings.together_base_url,
        ProviderKind.OPENAI_COMPATIBLE: None,
    }[kind]
    base = _first(override, specific, settings.llm_base_url) or DEFAULT_BASE_URLS.get(kind)
    return normalize_base_url(base) if base else None


def resolve_provider_config(kind: ProviderKind, settings: Settings, overrides: Optional[LLMOverrides], is_primary: bool) -> Optional[ProviderConfig]:
    overrides = overrides or LLMOverrides()
    api_key = resolve_api_key(kind, settings, overrides.api_key)
    if not api_key:
        if is_primary:
            raise LLMConfigurationError(NO_KEY_MESSAGE)
        LOG.info('fallback_provider_dropped', extra={'provider': kind.value, 'reason': 'no api key'})
        return None
    base_url = resolve_base_url(kind, settings, overrides.base_url)
    if kind == ProviderKind.OPENAI_COMPATIBLE and not base_url:
        if is_primary:
            raise LLMConfigurationError('LLM_BASE_URL (or baseUrl override) is required for provider "openai-compatible".')
        LOG.info('fallback_provider_dropped', extra={'provider': kind.value, 'reason': 'no base url'})
        return None
    return ProviderConfig(
        provider=kind,
        api_key=api_key,
        model=resolve_model(kind, settings, overrides.model),
        base_url=base_url,
    )


def build_llm_config(settings: Settings, overrides: Optional[LLMOverrides] = None) -> LLMConfig:
    """Resolve the provider chain for one enrichment run.

    The primary provider must resolve; fallbacks without a usable credential
    (or, for ``openai-compatible``, without a base URL) are dropped.
    """
    overrides = overrides or LLMOverrides()
    primary_kind = parse_provider(overrides.provider or settings.llm_provider)
    if overrides.fallback_providers is not None:
        fallback_kinds = parse_provider_list(overrides.fallback_providers)
    else:
        fallback_kinds = parse_provider_list(settings.llm_fallback_providers)

    providers = [resolve_provider_config(primary_kind, settings, overrides, is_primary=True)]
    for kind in fallback_kinds:
        if any(p.provider == kind for p in providers):
            continue
        # request overrides belong to the primary only
        config = resolve_provider_config(kind, settings, None, is_primary=False)
        if config is not None:
            providers.append(config)

    return LLMConfig(
        providers=providers,
        max_retries=max(0, settings.llm_max_retries),
        timeout_s=max(1, settings.llm_timeout_ms) / 1000.0,
        retry_base_delay_s=max(0, settings.llm_retry_base_delay_ms) / 1000.0,
    )

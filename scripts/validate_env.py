import os
import sys
import argparse
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / '.env')

from enricher.utils import Settings
from enricher.llm import LLMConfigurationError, build_llm_config
from enricher.anki import AnkiConnectClient, AnkiConnectError, is_localhost

errors = []
warnings = []

parser = argparse.ArgumentParser()
parser.add_argument('--strict', '-s', action='store_true', help='Convert warnings to failures')
parser.add_argument('--check-anki', action='store_true', help='Ping AnkiConnect as well')
args = parser.parse_args()
STRICT = args.strict

try:
    settings = Settings()
except ValueError as e:
    print(f'Settings could not be loaded: {e}')
    sys.exit(1)

# Provider chain
try:
    config = build_llm_config(settings)
    print('LLM providers: ' + ', '.join(f'{p.provider.value} ({p.model})' for p in config.providers))
    requested = [p for p in (settings.llm_fallback_providers or '').split(',') if p.strip()]
    if len(config.providers) < 1 + len(requested):
        warnings.append('Some fallback providers were dropped (missing API key or base URL)')
except LLMConfigurationError as e:
    errors.append(f'llm: {e}')

openai_key = settings.openai_api_key or ''
if openai_key and not openai_key.startswith('sk-'):
    warnings.append('OPENAI_API_KEY does not start with sk-; verify provider')

# Numeric ranges
if settings.port < 1 or settings.port > 65535:
    errors.append('PORT must be integer between 1 and 65535')
if settings.llm_max_retries < 0 or settings.llm_max_retries > 10:
    errors.append('LLM_MAX_RETRIES must be between 0 and 10')
if settings.llm_timeout_ms < 1000:
    errors.append('LLM_TIMEOUT_MS must be at least 1000')
if settings.llm_retry_base_delay_ms < 0:
    errors.append('LLM_RETRY_BASE_DELAY_MS must not be negative')
if settings.llm_request_delay_ms < 0:
    errors.append('LLM_REQUEST_DELAY_MS must not be negative')
elif settings.llm_request_delay_ms < 200:
    warnings.append('LLM_REQUEST_DELAY_MS below 200ms is likely to hit free-tier rate limits')
if settings.enrich_batch_size < 1 or settings.enrich_batch_size > 50:
    errors.append('ENRICH_BATCH_SIZE must be between 1 and 50')

# Flashcard store
if not is_localhost(settings.ankiconnect_url):
    errors.append('ANKICONNECT_URL must point to localhost or 127.0.0.1')
elif args.check_anki:
    try:
        version = AnkiConnectClient(settings.ankiconnect_url).version()
        print(f'AnkiConnect: OK (version {version})')
    except AnkiConnectError as e:
        warnings.append(f'AnkiConnect check failed: {e}')

# Checkpoints
backend = (settings.checkpoint_backend or 'file').lower()
if backend not in ('file', 'redis', 'memory'):
    errors.append("CHECKPOINT_BACKEND must be 'file', 'redis' or 'memory'")
if backend == 'redis':
    if not settings.redis_url:
        errors.append('CHECKPOINT_BACKEND=redis requires REDIS_URL')
    else:
        try:
            import redis
            r = redis.from_url(settings.redis_url, socket_timeout=3)
            if r.ping():
                print('Redis: OK')
        except Exception as e:
            warnings.append(f'Redis check failed: {e}; the file store will be used')
if backend == 'file':
    directory = Path(settings.checkpoint_file).resolve().parent
    if not os.access(directory, os.W_OK):
        errors.append(f'Checkpoint directory not writable: {directory}')

if settings.redis_url and not urlparse(settings.redis_url).scheme.startswith('redis'):
    warnings.append('REDIS_URL should start with redis:// or rediss://')

if errors:
    print('\nENV validation failed:')
    for e in errors:
        print(' -', e)
    sys.exit(1)

if warnings:
    print('\nWarnings:')
    for w in warnings:
        print(' -', w)
    if STRICT:
        print('\nStrict mode enabled: treating warnings as errors')
        sys.exit(1)

print('\nAll critical validations passed')
sys.exit(0)

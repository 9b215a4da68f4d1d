import os
import time
from datetime import datetime, timezone
from typing import Optional, List, Union

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from enricher import __version__
from enricher.utils import Settings, get_logger, set_request_context, log_request
from enricher.llm import LLMClient, LLMConfig, LLMConfigurationError, LLMOverrides, build_llm_config
from enricher.cards import (
    BatchEnricher,
    CardEnricher,
    CardInput,
    EnrichedCard,
    enrich_deck_batch,
    is_degraded,
)
from enricher.priorities import suggest_top_priorities, suggest_heuristic_priorities
from enricher.anki import AnkiConnectClient, AnkiConnectError

LOG = get_logger()

settings = Settings()

app = FastAPI(title='Anki Enricher Service', version=__version__, description='LLM enrichment for flashcard decks')

# CORS config
origins = [o.strip() for o in settings.cors_origin.split(',') if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


def make_llm_client(config: LLMConfig) -> LLMClient:
    return LLMClient(config)


def make_anki_client() -> AnkiConnectClient:
    return AnkiConnectClient(settings.ankiconnect_url)


def make_batch_enricher(client: LLMClient, request_delay_ms: Optional[int] = None) -> BatchEnricher:
    delay_ms = settings.llm_request_delay_ms if request_delay_ms is None else request_delay_ms
    return BatchEnricher(CardEnricher(client), request_delay_s=max(0, delay_ms) / 1000.0)


def _request_id(request: Request) -> str:
    return getattr(request.state, 'request_id', None) or os.urandom(8).hex()


def _clean_deck_name(value: Optional[str]) -> str:
    return (value or '').replace('<', '').replace('>', '').replace('"', '').replace("'", '').strip()


def _error(status_code: int, error: str, request_id: str, details: Optional[str] = None, **extra) -> JSONResponse:
    body = {'success': False, 'error': error, 'request_id': request_id}
    if details is not None:
        body['details'] = details
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


@app.middleware('http')
async def add_request_id_and_logging(request: Request, call_next):
    # prefer incoming X-Request-ID header for cross-service tracing
    request_id = request.headers.get('x-request-id') or os.urandom(8).hex()
    request.state.request_id = request_id
    set_request_context(request_id)
    start = time.time()
    try:
        response: Response = await call_next(request)
    except Exception:
        LOG.exception('Unhandled exception in request', exc_info=True)
        body = {'success': False, 'error': {'message': 'Internal server error', 'request_id': request_id}}
        return JSONResponse(status_code=500, content=body)
    duration = int((time.time() - start) * 1000)
    log_request(request_id, request.method, request.url.path, response.status_code, duration, request.client.host if request.client else None)
    response.headers['X-Request-ID'] = request_id
    return response


@app.get('/health')
async def health():
    return {'status': 'ok', 'timestamp': datetime.now(timezone.utc).isoformat(), 'service': 'anki-enricher'}


def _check_llm():
    try:
        config = build_llm_config(settings)
        return 'ok: ' + ', '.join(p.provider.value for p in config.providers)
    except LLMConfigurationError as e:
        return f'error: {e}'


def _check_ankiconnect():
    try:
        return 'ok' if make_anki_client().ping() else 'error: ankiconnect unreachable'
    except AnkiConnectError as e:
        return f'error: {e}'


def _check_redis():
    if settings.checkpoint_backend != 'redis':
        return 'skipped'
    if not settings.redis_url:
        return 'error: REDIS_URL not set'
    try:
        import redis
        r = redis.from_url(settings.redis_url, socket_timeout=3)
        r.ping()
        return 'ok'
    except Exception as e:
        return f'error: {str(e)}'


@app.get('/ready')
def ready():
    services = {
        'llm': _check_llm(),
        'ankiconnect': _check_ankiconnect(),
        'redis': _check_redis(),
    }
    ready_ok = not services['llm'].startswith('error')
    if settings.redis_required_for_ready and services['redis'].startswith('error'):
        ready_ok = False
    status_code = 200 if ready_ok else 503
    return JSONResponse(status_code=status_code, content={'status': 'ready' if ready_ok else 'not ready', 'services': services})


class LLMOverrideFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = Field(None, alias='apiKey')
    base_url: Optional[str] = Field(None, alias='baseUrl')
    fallback_providers: Optional[Union[str, List[str]]] = Field(None, alias='fallbackProviders')

    def to_overrides(self) -> LLMOverrides:
        fallbacks = self.fallback_providers
        if isinstance(fallbacks, str):
            fallbacks = [f for f in fallbacks.split(',') if f.strip()]
        return LLMOverrides(provider=self.provider, model=self.model, api_key=self.api_key, base_url=self.base_url, fallback_providers=fallbacks)


class EnrichCardsRequest(LLMOverrideFields):
    cards: List[CardInput] = Field(default_factory=list)
    request_delay_ms: Optional[int] = Field(None, alias='requestDelayMs', ge=0)


class EnrichDeckRequest(LLMOverrideFields):
    deck_name: str = Field('', alias='deckName')
    limit: Optional[int] = None
    offset: int = Field(0, ge=0)
    request_delay_ms: Optional[int] = Field(None, alias='requestDelayMs', ge=0)


class PriorityCardPayload(BaseModel):
    id: Union[str, int]
    front: str = ''
    options: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class PrioritizeRequest(LLMOverrideFields):
    cards: Optional[List[PriorityCardPayload]] = None
    deck_name: Optional[str] = Field(None, alias='deckName')
    top_n: Optional[int] = Field(None, alias='topN')
    heuristic: bool = False


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deck_name: str = Field('', alias='deckName')
    cards: List[EnrichedCard] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    write_back: bool = Field(False, alias='writeBack')


@app.post('/enrich-cards')
def enrich_cards_endpoint(req: EnrichCardsRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    if not req.cards:
        return _error(400, 'cards array is required and must not be empty', request_id)

    LOG.info('enrich_cards_start', extra={'request_id': request_id, 'count': len(req.cards)})
    start = time.time()
    try:
        client = make_llm_client(build_llm_config(settings, req.to_overrides()))
        outcome = make_batch_enricher(client, req.request_delay_ms).run(req.cards)
    except LLMConfigurationError as e:
        LOG.warning('enrich_cards_config_error', extra={'request_id': request_id, 'error': str(e)})
        return _error(400, 'LLM configuration error', request_id, details=str(e))
    except Exception as e:
        LOG.exception('enrich_cards_unknown', exc_info=True)
        return _error(500, 'Unexpected error', request_id, details=str(e))

    duration_ms = int((time.time() - start) * 1000)
    LOG.info('enrich_cards_complete', extra={'request_id': request_id, 'attempted': outcome.attempted, 'rate_limited': outcome.rate_limited, 'duration_ms': duration_ms})
    return {
        'success': True,
        'enriched': [c.to_wire() for c in outcome.enriched],
        'count': len(outcome.enriched),
        'rateLimited': outcome.rate_limited,
        'request_id': request_id,
    }


@app.post('/enrich-deck')
def enrich_deck_endpoint(req: EnrichDeckRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    deck_name = _clean_deck_name(req.deck_name)
    if not deck_name:
        return _error(400, 'deckName is required', request_id)
    set_request_context(request_id, deck_name)

    try:
        client = make_llm_client(build_llm_config(settings, req.to_overrides()))
        anki = make_anki_client()
        anki.version()
        result = enrich_deck_batch(
            anki,
            deck_name,
            make_batch_enricher(client, req.request_delay_ms),
            batch_size=settings.enrich_batch_size,
            limit=req.limit,
            offset=req.offset,
        )
    except LLMConfigurationError as e:
        return _error(400, 'LLM configuration error', request_id, details=str(e))
    except AnkiConnectError as e:
        LOG.warning('enrich_deck_anki_error', extra={'request_id': request_id, 'error': str(e)})
        return _error(502, 'AnkiConnect error', request_id, details=str(e))
    except Exception as e:
        LOG.exception('enrich_deck_unknown', exc_info=True)
        return _error(500, 'Unexpected error', request_id, details=str(e))

    body = {'success': True, **result.to_wire(), 'request_id': request_id}
    if result.total == 0:
        body['message'] = 'Keine Karten mit gültigem Front-Feld in diesem Deck gefunden.'
    return body


@app.post('/prioritize-cards')
def prioritize_cards_endpoint(req: PrioritizeRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    cards = [c.model_dump() for c in req.cards] if req.cards else []
    deck_name = _clean_deck_name(req.deck_name)
    if not cards and not deck_name:
        return _error(400, 'cards or deckName is required', request_id)

    try:
        if not cards:
            anki = make_anki_client()
            cards = [
                {'id': c.note_id, 'front': c.front, 'options': c.options or [], 'tags': c.tags}
                for c in anki.get_cards_from_deck(deck_name)
            ]
        if req.heuristic:
            result = suggest_heuristic_priorities(cards, req.top_n)
        else:
            result = suggest_top_priorities(cards, settings, top_n=req.top_n, overrides=req.to_overrides(), client_factory=make_llm_client)
    except AnkiConnectError as e:
        return _error(502, 'AnkiConnect error', request_id, details=str(e))
    except Exception as e:
        LOG.exception('prioritize_unknown', exc_info=True)
        return _error(500, 'Unexpected error', request_id, details=str(e))

    return {'success': result.error is None, **result.to_wire(), 'request_id': request_id}


@app.post('/sync-to-anki')
def sync_to_anki_endpoint(req: SyncRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    deck_name = _clean_deck_name(req.deck_name)
    if not deck_name:
        return _error(400, 'deckName is required', request_id)
    if not req.cards:
        return _error(400, 'cards array is required and must not be empty', request_id)

    # failed or skipped cards are never written into a deck
    cards = [c for c in req.cards if not is_degraded(c)]
    skipped = len(req.cards) - len(cards)
    try:
        anki = make_anki_client()
        anki.version()
        if req.write_back:
            targets = [c for c in cards if c.note_id is not None]
            for card in targets:
                anki.write_back(card.note_id, card)
            return {'success': True, 'updated': len(targets), 'count': len(targets), 'skipped': skipped, 'request_id': request_id,
                    'message': f'{len(targets)} Karten in "{deck_name}" aktualisiert.'}
        note_ids = anki.sync_enriched_cards(deck_name, cards, tags=req.tags) if cards else []
    except AnkiConnectError as e:
        LOG.warning('sync_anki_error', extra={'request_id': request_id, 'error': str(e)})
        return _error(502, 'AnkiConnect error', request_id, details=str(e))
    except Exception as e:
        LOG.exception('sync_unknown', exc_info=True)
        return _error(500, 'Unexpected error', request_id, details=str(e))

    created = [i for i in note_ids if i]
    return {
        'success': True,
        'noteIds': note_ids,
        'count': len(created),
        'updated': len(created),
        'skipped': skipped,
        'message': f'{len(created)} Karten zu "{deck_name}" hinzugefügt.',
        'request_id': request_id,
    }


@app.get('/decks')
def list_decks_endpoint(fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    try:
        decks = make_anki_client().list_decks()
    except AnkiConnectError as e:
        return _error(502, 'AnkiConnect error', request_id, details=str(e))
    return {'success': True, 'decks': decks, 'request_id': request_id}


@app.on_event('startup')
async def on_startup():
    LOG.info('Enricher service starting', extra={'env': settings.environment})
    llm_status = _check_llm()
    if llm_status.startswith('error'):
        LOG.warning('No usable LLM provider configured', extra={'status': llm_status})
    else:
        LOG.info('LLM provider chain resolved', extra={'status': llm_status})


@app.on_event('shutdown')
async def on_shutdown():
    LOG.info('Enricher service shutting down')


if __name__ == '__main__':
    import uvicorn

    workers = int(os.getenv('WORKERS', '1'))
    # uvicorn does not support --reload with multiple workers
    if settings.environment == 'development':
        workers = 1
    reload_enabled = (settings.environment == 'development') and (workers == 1)

    uvicorn.run(
        'main:app',
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=reload_enabled,
        workers=workers,
    )

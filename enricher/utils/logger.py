import os
import sys
import logging
import pathlib
import contextvars
from logging.handlers import RotatingFileHandler
from pythonjsonlogger import jsonlogger

_request_ctx_var = contextvars.ContextVar('request_ctx', default={})


def set_request_context(request_id: str, deck_name: str = None):
    _request_ctx_var.set({'request_id': request_id, 'deck_name': deck_name})


def get_request_context():
    return _request_ctx_var.get()


def _inject_request_context(record):
    ctx = get_request_context()
    record.request_id = ctx.get('request_id')
    record.deck_name = ctx.get('deck_name')
    return True


def get_logger(name: str = 'anki_enricher'):
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'true').lower() in ('1', 'true', 'yes')
    # relative to the working directory so local runs don't need /app
    LOG_FILE_PATH = os.getenv('LOG_FILE_PATH', 'logs')
    LOG_MAX_SIZE = int(os.getenv('LOG_MAX_SIZE', str(10 * 1024 * 1024)))
    LOG_MAX_FILES = int(os.getenv('LOG_MAX_FILES', '7'))

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL.upper())

    ch = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT == 'json':
        fmt = jsonlogger.JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s')
    else:
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    if LOG_TO_FILE:
        log_path = pathlib.Path(LOG_FILE_PATH)
        if not log_path.is_absolute():
            log_path = pathlib.Path(os.getcwd()) / log_path
        log_path.mkdir(parents=True, exist_ok=True)

        combined = RotatingFileHandler(log_path / 'combined.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        combined.setFormatter(fmt)
        logger.addHandler(combined)

        errors = RotatingFileHandler(log_path / 'error.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        errors.setLevel(logging.ERROR)
        errors.setFormatter(fmt)
        logger.addHandler(errors)

    f = logging.Filter()
    f.filter = _inject_request_context
    logger.addFilter(f)

    logging.captureWarnings(True)

    return logger


def log_request(request_id: str, method: str, path: str, status_code: int, duration_ms: float, ip: str = None):
    logger = get_logger()
    logger.info('http_request', extra={'request_id': request_id, 'method': method, 'path': path, 'status_code': status_code, 'duration_ms': duration_ms, 'ip': ip})


def log_error(error: Exception, context: dict = None):
    logger = get_logger()
    logger.exception('error', exc_info=True, extra=context or {})


def log_llm_call(provider: str, model: str, attempt: int, duration_ms: float, outcome: str, error: str = None):
    logger = get_logger()
    logger.info('llm_call', extra={
        'provider': provider,
        'model': model,
        'attempt': attempt,
        'duration_ms': duration_ms,
        'outcome': outcome,
        'error': error,
    })


def log_provider_fallback(chain: list, final_provider: str, failures: list):
    logger = get_logger()
    logger.info('llm_provider_fallback', extra={
        'chain': chain,
        'final_provider': final_provider,
        'failures': failures,
    })


def log_card_enrichment(front_preview: str, template: str, duration_ms: float, status: str):
    logger = get_logger()
    logger.info('card_enrichment', extra={
        'front_preview': front_preview,
        'template': template,
        'duration_ms': duration_ms,
        'status': status,
    })


def log_batch_progress(completed: int, total: int, rate_limited: bool = False, checkpoint_key: str = None):
    logger = get_logger()
    logger.info('batch_progress', extra={
        'completed': completed,
        'total': total,
        'rate_limited': rate_limited,
        'checkpoint_key': checkpoint_key,
    })


def log_priority_suggestion(card_count: int, sample_size: int, top_n: int, method: str, topic_count: int, duration_ms: float):
    logger = get_logger()
    logger.info('priority_suggestion', extra={
        'card_count': card_count,
        'sample_size': sample_size,
        'top_n': top_n,
        'method': method,
        'topic_count': topic_count,
        'duration_ms': duration_ms,
    })

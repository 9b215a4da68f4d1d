import re
import html

_BR_RE = re.compile(r'<br\s*/?>', re.IGNORECASE)
_TAG_RE = re.compile(r'<[^>]*>')
_WS_RE = re.compile(r'\s+')


def strip_html(value: str) -> str:
    """Drop line-break tags, other tags and entities from card markup."""
    if not value:
        return ''
    text = _BR_RE.sub(' ', value)
    text = _TAG_RE.sub(' ', text)
    # entities last so an escaped "&lt;b&gt;" survives as text
    return html.unescape(text)


def normalize_whitespace(value: str) -> str:
    if not value:
        return ''
    return _WS_RE.sub(' ', value).strip()


def sanitize_for_prompt(value: str) -> str:
    return normalize_whitespace(strip_html(value or ''))


def truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[:max(0, max_len - 3)] + '...'

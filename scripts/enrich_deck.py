"""Enrich one deck, resuming from the last checkpoint.

Skips notes whose ``Extra 1`` already carries an enrichment, then enriches the
rest one card at a time, saving the resume offset plus results in the
checkpoint store after every card. Stops early (exit code 2) when the
providers report a rate limit; run it again later to continue.

    python scripts/enrich_deck.py "Innere Medizin::Kardiologie" --write-back
"""
import sys
import argparse
from pathlib import Path

from dotenv import load_dotenv

from enricher.utils import Settings, get_logger, set_request_context
from enricher.llm import LLMClient, LLMConfigurationError, LLMOverrides, build_llm_config
from enricher.cards import (
    BatchEnricher,
    BatchProgress,
    CardEnricher,
    checkpoint_key,
    clamp_limit,
    get_checkpoint_store,
    is_degraded,
)
from enricher.anki import AnkiConnectClient, AnkiConnectError

load_dotenv(Path(__file__).resolve().parent.parent / '.env')

LOG = get_logger()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Enrich a deck once, resuming from the last checkpoint')
    parser.add_argument('deck', help='Deck name as shown in Anki')
    parser.add_argument('--limit', type=int, default=None, help='Cap the deck at this many cards (1-500, default 100)')
    parser.add_argument('--write-back', action='store_true', help="Write enrichment into each note's Extra 1 field")
    parser.add_argument('--reset', action='store_true', help='Discard the stored checkpoint before starting')
    parser.add_argument('--provider', default=None, help='Primary provider override')
    parser.add_argument('--fallback', default=None, help='Comma-separated fallback providers')
    return parser.parse_args(argv)


def select_cards(anki: AnkiConnectClient, cards, progress):
    """Cards this run works through, in deck order.

    Notes that already carry an enrichment are left out, except the ones this
    checkpoint enriched itself, so a resumed run sees the same list it started
    with.
    """
    own = {c.note_id for c in progress.enriched if c.note_id is not None} if progress else set()
    return [
        c for c in cards
        if c.note_id is None or c.note_id in own or not anki.note_has_enrichment(c.note_id)
    ]


def run(args, settings: Settings, anki: AnkiConnectClient, client: LLMClient, store) -> int:
    key = checkpoint_key(args.deck)
    if args.reset:
        store.clear(key)

    deck = anki.get_cards_from_deck(args.deck)[:clamp_limit(args.limit)]
    progress = store.load(key)
    cards = select_cards(anki, deck, progress)
    if progress is None:
        store.save(key, BatchProgress(deck_name=args.deck, total=len(cards), skipped=len(deck) - len(cards)))

    print(f'Deck: {args.deck}')
    print(f'Starting at offset {progress.processed if progress else 0} of {len(cards)}')

    def write_back(offset, card, state):
        if args.write_back and card.note_id is not None and not is_degraded(card):
            anki.write_back(card.note_id, card)
            state.synced += 1

    def report(done, total):
        print(f'  {done}/{total} processed')

    batch = BatchEnricher(CardEnricher(client), request_delay_s=settings.llm_request_delay_ms / 1000.0)
    outcome = batch.run_with_checkpoint(key, cards, store, deck_name=args.deck, on_progress=report, on_card=write_back)
    progress = store.load(key)

    if outcome.rate_limited:
        LOG.warning('deck_run_rate_limited', extra={'deck_name': args.deck, 'processed': progress.processed, 'total': progress.total})
        print('Rate limit reached; run again later to continue.')
        return 2

    print('Completed!')
    print(f'  Processed: {progress.processed}/{progress.total}')
    print(f'  Skipped (already enriched): {progress.skipped}')
    print(f'  Written back: {progress.synced}')
    print(f'  Errors: {len(progress.errors)}')
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = Settings()
    set_request_context('cli', args.deck)
    overrides = None
    if args.provider or args.fallback:
        overrides = LLMOverrides(provider=args.provider, fallback_providers=args.fallback.split(',') if args.fallback else None)
    try:
        client = LLMClient(build_llm_config(settings, overrides))
        anki = AnkiConnectClient(settings.ankiconnect_url)
        anki.version()
        return run(args, settings, anki, client, get_checkpoint_store(settings))
    except LLMConfigurationError as e:
        print(f'Configuration error: {e}', file=sys.stderr)
        return 1
    except AnkiConnectError as e:
        print(f'AnkiConnect error: {e}', file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())

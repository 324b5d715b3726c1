#!/usr/bin/env python3
"""
Load classifier intents from a YAML file into Postgres with OpenAI embeddings.

Usage:
  python scripts/load_intents.py [path/to/intents.yaml] [--deactivate NAME ...]
"""

import argparse
import sys
from pathlib import Path

from wabot.database import SessionLocal
from wabot.logging_config import setup_logging
from wabot.services.intent_service import DEFAULT_INTENTS_PATH, bulk_load_intents, deactivate_intent, load_intents_file
from wabot.services.registry import get_embedding_provider


def main() -> int:
    parser = argparse.ArgumentParser(description="Bulk-load classifier intents")
    parser.add_argument("path", nargs="?", default=str(DEFAULT_INTENTS_PATH))
    parser.add_argument("--deactivate", nargs="*", default=[], help="intent names to deactivate")
    args = parser.parse_args()

    setup_logging()

    intents = load_intents_file(Path(args.path))
    if not intents and not args.deactivate:
        print(f"No intents found in {args.path}", file=sys.stderr)
        return 1

    db = SessionLocal()
    try:
        if intents:
            summary = bulk_load_intents(db, get_embedding_provider(), intents)
            print(
                f"Loaded {summary['intents']} intents: "
                f"{summary['examples_added']} examples added, {summary['examples_skipped']} already present"
            )
        for name in args.deactivate:
            if deactivate_intent(db, name):
                print(f"Deactivated {name}")
            else:
                print(f"Intent {name} not found", file=sys.stderr)
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Database initialisation script for DMARC Analyser.

Creates all tables and seeds the global known-sender catalogue.

Safe to run multiple times (idempotent).

Usage:
    python init_db.py
"""

from __future__ import annotations

import sys

from dmarc_analyser import create_app, db
from dmarc_analyser.sources.seed import seed_known_senders


def init_database() -> None:
    """Initialise the database within the Flask application context."""
    app = create_app()

    with app.app_context():
        db.create_all()
        print("[init_db] Tables created / verified.")

        added = seed_known_senders()
        print(f"[init_db] Known senders seeded: {added} added.")

        print("[init_db] Initialisation complete.")


if __name__ == "__main__":
    try:
        init_database()
    except Exception as exc:  # pylint: disable=broad-except
        print(f"[init_db] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

"""
Quote numbering — global, strictly increasing, never reused.

The last issued number lives in the `counters` table and is bumped with an
atomic increment inside one IMMEDIATE transaction, so two concurrent creates
can never observe the same value. On first use the counter is seeded from the
highest number already present in `quotes`.
"""

import logging

from src.core.db import get_db, now_iso, max_quote_number

log = logging.getLogger("quotes.numbering")

COUNTER_NAME = "quote_number"
DISPLAY_WIDTH = 6


def format_quote_number(number) -> str:
    """000042 — zero-padded display form."""
    return str(int(number or 0)).zfill(DISPLAY_WIDTH)


def next_quote_number() -> int:
    """Reserve and return the next quote number (first ever is 1)."""
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT value FROM counters WHERE name=?",
                           (COUNTER_NAME,)).fetchone()
        if row is None:
            value = max_quote_number(conn) + 1
            conn.execute("INSERT INTO counters (name, value, updated_at) VALUES (?,?,?)",
                         (COUNTER_NAME, value, now_iso()))
            log.info("Quote counter seeded at %d", value)
        else:
            conn.execute("UPDATE counters SET value = value + 1, updated_at=? WHERE name=?",
                         (now_iso(), COUNTER_NAME))
            value = conn.execute("SELECT value FROM counters WHERE name=?",
                                 (COUNTER_NAME,)).fetchone()[0]
    log.debug("Reserved quote number %s", format_quote_number(value))
    return value


def peek_next_quote_number() -> int:
    """Preview what the next number would be without consuming it."""
    with get_db() as conn:
        row = conn.execute("SELECT value FROM counters WHERE name=?",
                           (COUNTER_NAME,)).fetchone()
        current = row[0] if row else max_quote_number(conn)
    return current + 1


def set_quote_counter(value: int) -> int:
    """Align the counter so the next number is value + 1.

    Never moves below the highest number already issued. Returns the value
    actually stored.
    """
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        floor = max_quote_number(conn)
        row = conn.execute("SELECT value FROM counters WHERE name=?",
                           (COUNTER_NAME,)).fetchone()
        if row is not None:
            floor = max(floor, row[0])
        stored = max(int(value), floor)
        conn.execute("""
            INSERT INTO counters (name, value, updated_at) VALUES (?,?,?)
            ON CONFLICT(name) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (COUNTER_NAME, stored, now_iso()))
    if stored != value:
        log.warning("Quote counter kept at %d (requested %d is below issued numbers)",
                    stored, value)
    else:
        log.info("Quote counter set to %d → next will be %s",
                 stored, format_quote_number(stored + 1))
    return stored

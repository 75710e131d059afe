"""Seed the quote history database from JSON.

Reads data/history/past_quotes.json and creates data/history.db with:
- past_quotes (one row per quote previously issued)

The service opens this file read-only and uses it for comparables.
Idempotent: drops and recreates the table on each run.

Usage:
    python scripts/seed_database.py
    python scripts/seed_database.py --source my_quotes.json --db /tmp/history.db
"""

import argparse
import json
import sqlite3
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
SOURCE_PATH = BASE_DIR / "data" / "history" / "past_quotes.json"
DB_PATH = BASE_DIR / "data" / "history.db"

DIMENSION_KEYS = ("length", "width", "height", "thickness", "diameter")
REQUIRED_KEYS = ("document_id", "quoted_on", "material", "total")


def load_quotes(path: Path) -> list[dict]:
    if not path.exists():
        raise FileNotFoundError(f"Required file not found: {path}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
    quotes = data["quotes"] if isinstance(data, dict) else data
    for i, quote in enumerate(quotes):
        missing = [k for k in REQUIRED_KEYS if quote.get(k) is None]
        if missing:
            raise ValueError(f"Quote #{i} in {path} is missing {missing}")
    return quotes


def create_tables(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        DROP TABLE IF EXISTS past_quotes;

        CREATE TABLE past_quotes (
            document_id TEXT PRIMARY KEY,
            quoted_on TEXT NOT NULL,
            filename TEXT,
            material TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            length REAL,
            width REAL,
            height REAL,
            thickness REAL,
            diameter REAL,
            unit TEXT DEFAULT 'mm',
            manufacturing_process TEXT,
            total REAL NOT NULL CHECK (total >= 0),
            confidence REAL,
            status TEXT
        );

        CREATE INDEX idx_past_quotes_material ON past_quotes(material);
    """)


def seed_quotes(conn: sqlite3.Connection, quotes: list[dict]) -> int:
    rows = []
    for q in quotes:
        dims = q.get("dimensions") or {}
        rows.append((
            q["document_id"],
            q["quoted_on"],
            q.get("filename"),
            q["material"],
            q.get("quantity", 1),
            *(dims.get(k) for k in DIMENSION_KEYS),
            dims.get("unit", "mm"),
            json.dumps(q.get("manufacturing_process", [])),
            q["total"],
            q.get("confidence"),
            q.get("status"),
        ))
    conn.executemany(
        "INSERT INTO past_quotes VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        rows,
    )
    return len(rows)


def verify(conn: sqlite3.Connection) -> None:
    count = conn.execute("SELECT COUNT(*) FROM past_quotes").fetchone()[0]
    print(f"  past_quotes: {count} rows")

    steel = conn.execute(
        "SELECT COUNT(*) FROM past_quotes WHERE material LIKE '%steel%' COLLATE NOCASE"
    ).fetchone()[0]
    print(f"  material family 'steel': {steel} rows")

    latest = conn.execute(
        "SELECT document_id, quoted_on FROM past_quotes ORDER BY quoted_on DESC LIMIT 1"
    ).fetchone()
    if latest is None:
        raise RuntimeError("Verification failed: past_quotes is empty")
    print(f"  latest: {latest[0]} ({latest[1]})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the quote history database")
    parser.add_argument("--source", type=Path, default=SOURCE_PATH, help="JSON file of past quotes")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="SQLite file to create")
    args = parser.parse_args()

    quotes = load_quotes(args.source)
    print(f"Seeding database: {args.db}")
    args.db.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(args.db))
    try:
        create_tables(conn)
        n_quotes = seed_quotes(conn, quotes)
        conn.commit()
        print(f"Seeded: {n_quotes} past quotes")

        print("Verification:")
        verify(conn)
        print("Database seeded successfully.")
    finally:
        conn.close()


if __name__ == "__main__":
    main()

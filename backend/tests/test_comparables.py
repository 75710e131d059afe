import importlib.util
import sqlite3
from pathlib import Path

import pytest

from history.comparables import ComparablesLookup, material_family
from history.database import Database

SEED_SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "seed_database.py"


def _load_seed_module():
    spec = importlib.util.spec_from_file_location("seed_database", SEED_SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
async def lookup(tmp_path):
    """Seed a temp database from the shipped past_quotes.json."""
    seed = _load_seed_module()
    db_path = tmp_path / "history.db"
    conn = sqlite3.connect(str(db_path))
    try:
        seed.create_tables(conn)
        seed.seed_quotes(conn, seed.load_quotes(seed.SOURCE_PATH))
        conn.commit()
    finally:
        conn.close()
    db = await Database.connect(str(db_path))
    yield ComparablesLookup(db)
    await db.close()


def test_material_family():
    assert material_family("Steel SS400") == "steel"
    assert material_family("  aluminum-5052") == "aluminum"
    assert material_family("unspecified") is None
    assert material_family("") is None


@pytest.mark.asyncio
async def test_find_similar_matches_family(lookup):
    results = await lookup.find_similar("Steel S45C")
    assert len(results) == 3
    assert all("Steel" in r.material for r in results)
    # Most recent first
    assert [r.quoted_on for r in results] == sorted((r.quoted_on for r in results), reverse=True)


@pytest.mark.asyncio
async def test_find_similar_is_case_insensitive(lookup):
    results = await lookup.find_similar("ALUMINUM")
    assert [r.document_id for r in results] == ["DOC-1734071025660"]
    assert results[0].total == 52300
    assert results[0].status == "accepted"


@pytest.mark.asyncio
async def test_find_similar_respects_limit(lookup):
    assert len(await lookup.find_similar("steel", limit=2)) == 2


@pytest.mark.asyncio
async def test_find_similar_unknown_material(lookup):
    assert await lookup.find_similar("Titanium Gr5") == []
    assert await lookup.find_similar("unspecified") == []


@pytest.mark.asyncio
async def test_row_decodes_dimensions_and_processes(lookup):
    [brass] = await lookup.find_similar("Brass")
    assert brass.quantity == 50
    assert brass.dimensions.diameter == 12
    assert brass.dimensions.width is None
    assert brass.dimensions.unit == "mm"
    assert brass.manufacturing_process == ["CNC turning", "threading"]


@pytest.mark.asyncio
async def test_recent(lookup):
    results = await lookup.recent(limit=5)
    assert len(results) == 5
    assert results[0].document_id == "DOC-1734157425660"


def test_seed_rejects_incomplete_quote(tmp_path):
    seed = _load_seed_module()
    bad = tmp_path / "quotes.json"
    bad.write_text('{"quotes": [{"document_id": "DOC-1", "material": "Steel"}]}')
    with pytest.raises(ValueError, match="missing"):
        seed.load_quotes(bad)

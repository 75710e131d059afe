import json
import logging
import re

from api.schemas import Dimensions, HistoricalComparable
from .database import Database

logger = logging.getLogger(__name__)

DIMENSION_COLUMNS = ("length", "width", "height", "thickness", "diameter")


def material_family(material_type: str) -> str | None:
    """First alphabetic word of a material name: 'Steel SS400' -> 'steel'."""
    match = re.search(r"[A-Za-z]+", material_type or "")
    if not match or match.group(0).lower() == "unspecified":
        return None
    return match.group(0).lower()


def _row_to_comparable(row: dict) -> HistoricalComparable:
    processes = row.get("manufacturing_process") or "[]"
    if isinstance(processes, str):
        try:
            processes = json.loads(processes)
        except json.JSONDecodeError:
            processes = [processes]
    dims = None
    if any(row.get(col) is not None for col in DIMENSION_COLUMNS):
        dims = Dimensions(
            **{col: row.get(col) for col in DIMENSION_COLUMNS},
            unit=row.get("unit") or "mm",
        )
    return HistoricalComparable(
        document_id=row["document_id"],
        quoted_on=row["quoted_on"],
        filename=row.get("filename"),
        material=row["material"],
        quantity=row.get("quantity") or 1,
        dimensions=dims,
        manufacturing_process=processes,
        total=row["total"],
        confidence=row.get("confidence"),
        status=row.get("status"),
    )


class ComparablesLookup:
    def __init__(self, db: Database):
        self.db = db

    async def find_similar(self, material_type: str, limit: int = 5) -> list[HistoricalComparable]:
        """Most recent past quotes in the same material family."""
        family = material_family(material_type)
        if family is None:
            return []
        rows = await self.db.fetchall(
            """SELECT * FROM past_quotes
               WHERE material LIKE ? COLLATE NOCASE
               ORDER BY quoted_on DESC
               LIMIT ?""",
            (f"%{family}%", limit),
        )
        logger.info("Found %d comparables for material family=%s", len(rows), family)
        return [_row_to_comparable(r) for r in rows]

    async def recent(self, limit: int = 5) -> list[HistoricalComparable]:
        rows = await self.db.fetchall(
            "SELECT * FROM past_quotes ORDER BY quoted_on DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_comparable(r) for r in rows]

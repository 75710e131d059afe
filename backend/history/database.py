import aiosqlite
from pathlib import Path


class Database:
    def __init__(self):
        self.conn: aiosqlite.Connection | None = None

    @classmethod
    async def connect(cls, path: str) -> "Database":
        db_path = Path(path)
        if not db_path.exists():
            raise FileNotFoundError(
                f"Quote history database not found at {path}. "
                f"Run 'python scripts/seed_database.py' first."
            )
        db = cls()
        # Read-only: the service never writes quote history.
        db.conn = await aiosqlite.connect(f"file:{db_path.resolve()}?mode=ro", uri=True)
        db.conn.row_factory = aiosqlite.Row
        return db

    async def fetchall(self, query: str, params: tuple = ()) -> list[dict]:
        async with self.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def close(self):
        if self.conn:
            await self.conn.close()

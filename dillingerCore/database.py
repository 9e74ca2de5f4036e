import aiosqlite
import json
from typing import List, Optional, Dict, Any
from pathlib import Path
from datetime import datetime, timezone

from .models import Game, Platform

GAMES_KIND = "games"
PLATFORMS_KIND = "platforms"


class Database:
    """Keyed JSON document store.

    Every write replaces the whole document for one (kind, id) key, so each key
    is atomic and the last writer wins. There are no cross-key transactions.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    async def __aenter__(self):
        await self.init_db()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass

    async def init_db(self):
        """Initialize the database with required tables"""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS entities (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (kind, id)
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_kind ON entities(kind)")
            await db.commit()

    async def read_entity(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get one document, or None when the key is absent"""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT data FROM entities WHERE kind=? AND id=?", (kind, entity_id)
            ) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                return json.loads(row[0])

    async def write_entity(self, kind: str, entity_id: str, data: Dict[str, Any]):
        """Insert or replace one document"""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO entities (kind, id, data, updated_at) VALUES (?, ?, ?, ?)",
                (
                    kind,
                    entity_id,
                    json.dumps(data, default=str),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            await db.commit()

    async def delete_entity(self, kind: str, entity_id: str) -> bool:
        """Delete one document. Returns True if something was removed"""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM entities WHERE kind=? AND id=?", (kind, entity_id)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_entities(self, kind: str) -> List[Dict[str, Any]]:
        """All documents of one kind, oldest write first"""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT data FROM entities WHERE kind=? ORDER BY updated_at, id", (kind,)
            ) as cursor:
                rows = await cursor.fetchall()
                return [json.loads(row[0]) for row in rows]

    # Library records

    async def get_game(self, game_id: str) -> Optional[Game]:
        data = await self.read_entity(GAMES_KIND, game_id)
        return Game.model_validate(data) if data else None

    async def save_game(self, game: Game):
        await self.write_entity(GAMES_KIND, game.id, game.model_dump(mode="json"))

    async def list_games(self) -> List[Game]:
        return [Game.model_validate(d) for d in await self.list_entities(GAMES_KIND)]

    async def get_platform(self, platform_id: str) -> Optional[Platform]:
        data = await self.read_entity(PLATFORMS_KIND, platform_id)
        return Platform.model_validate(data) if data else None

    async def save_platform(self, platform: Platform):
        await self.write_entity(PLATFORMS_KIND, platform.id, platform.model_dump(mode="json"))

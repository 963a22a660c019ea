import json
import time
from typing import List, Optional

import aiosqlite


class ActivityRepo:
    """Append-only activity log: session events, violations, admin actions."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def record(
        self, user_id: str, event_type: str, payload: Optional[dict] = None,
        created_at: Optional[float] = None,
    ) -> int:
        created_at = time.time() if created_at is None else created_at
        cursor = await self._db.execute(
            "INSERT INTO activity (user_id, type, payload, created_at) VALUES (?, ?, ?, ?)",
            (user_id, event_type, json.dumps(payload or {}, sort_keys=True), created_at),
        )
        await self._db.commit()
        return cursor.lastrowid

    async def list_all(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[dict]:
        clauses = []
        params: list = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if event_type:
            clauses.append("type = ?")
            params.append(event_type)
        sql = "SELECT id, user_id, type, payload, created_at FROM activity"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        results = []
        async with self._db.execute(sql, params) as cursor:
            async for row in cursor:
                results.append({
                    "id": row[0],
                    "user_id": row[1],
                    "type": row[2],
                    "payload": json.loads(row[3]),
                    "created_at": row[4],
                })
        return results

    async def count(self, user_id: Optional[str] = None, event_type: Optional[str] = None) -> int:
        clauses = []
        params: list = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if event_type:
            clauses.append("type = ?")
            params.append(event_type)
        sql = "SELECT COUNT(*) FROM activity"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        async with self._db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return row[0]

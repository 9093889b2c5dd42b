"""Configuration key-value store."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from garden.db import Handle

logger = logging.getLogger(__name__)

SECRET_MASK = "********"


@dataclass
class ConfigEntry:
    key: str
    value: str
    is_secret: bool = False
    updated_at: Optional[datetime] = None

    def to_dict(self, reveal: bool = False) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value if reveal or not self.is_secret else SECRET_MASK,
            "is_secret": self.is_secret,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ConfigStore:
    def __init__(self, db: Handle):
        self.db = db

    async def get(self, key: str) -> Optional[ConfigEntry]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT key, value, is_secret, updated_at FROM configurations WHERE key = $1",
                key,
            )
        if not row:
            return None
        return ConfigEntry(
            key=row["key"],
            value=row["value"],
            is_secret=row["is_secret"],
            updated_at=row["updated_at"],
        )

    async def get_value(self, key: str) -> Optional[str]:
        entry = await self.get(key)
        return entry.value if entry else None

    async def set(self, key: str, value: str, is_secret: bool = False) -> ConfigEntry:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO configurations (key, value, is_secret)
                VALUES ($1, $2, $3)
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, is_secret = EXCLUDED.is_secret, updated_at = NOW()
                RETURNING key, value, is_secret, updated_at
                """,
                key,
                value,
                is_secret,
            )
        logger.info(f"Configuration '{key}' updated")
        return ConfigEntry(
            key=row["key"],
            value=row["value"],
            is_secret=row["is_secret"],
            updated_at=row["updated_at"],
        )

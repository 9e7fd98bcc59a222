import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .provider_types import CAPABILITY_FAMILIES

DEFAULT_MODEL_PREFIX = "default_model."
CUSTOM_MODELS_KEY = "custom_models"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class PreferenceStore:
    """Key/value preferences: default model per capability family and custom model entries."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS preferences(
                    key TEXT PRIMARY KEY,
                    value_json TEXT,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def get(self, key: str, default: Any = None) -> Any:
        rows = await self.fetchall("SELECT value_json FROM preferences WHERE key=?", (key,))
        if not rows:
            return default
        try:
            return json.loads(rows[0]["value_json"])
        except (TypeError, ValueError):
            return default

    async def set(self, key: str, value: Any) -> None:
        await self.execute(
            "INSERT INTO preferences(key, value_json, updated_at) VALUES (?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at",
            (key, json.dumps(value), utc_now()),
        )

    async def delete(self, key: str) -> None:
        await self.execute("DELETE FROM preferences WHERE key=?", (key,))

    async def get_default_model(self, family: str) -> Optional[str]:
        value = await self.get(f"{DEFAULT_MODEL_PREFIX}{family}")
        return str(value) if value else None

    async def set_default_model(self, family: str, model_id: Optional[str]) -> None:
        if family not in CAPABILITY_FAMILIES:
            raise ValueError(f"Unknown capability family: {family}")
        key = f"{DEFAULT_MODEL_PREFIX}{family}"
        if model_id:
            await self.set(key, model_id)
        else:
            await self.delete(key)

    async def default_models(self) -> Dict[str, str]:
        rows = await self.fetchall(
            "SELECT key, value_json FROM preferences WHERE key LIKE ?", (f"{DEFAULT_MODEL_PREFIX}%",)
        )
        out: Dict[str, str] = {}
        for row in rows:
            family = row["key"][len(DEFAULT_MODEL_PREFIX):]
            try:
                value = json.loads(row["value_json"])
            except (TypeError, ValueError):
                continue
            if value:
                out[family] = str(value)
        return out

    async def list_custom_models(self) -> List[Dict[str, Any]]:
        value = await self.get(CUSTOM_MODELS_KEY, [])
        return [entry for entry in value or [] if isinstance(entry, dict)]

    async def add_custom_model(self, entry: Dict[str, Any]) -> List[Dict[str, Any]]:
        entries = [e for e in await self.list_custom_models() if e.get("hugging_face_id") != entry.get("hugging_face_id")]
        entries.append(dict(entry))
        await self.set(CUSTOM_MODELS_KEY, entries)
        return entries

    async def remove_custom_model(self, hf_id: str) -> List[Dict[str, Any]]:
        entries = [e for e in await self.list_custom_models() if e.get("hugging_face_id") != hf_id]
        await self.set(CUSTOM_MODELS_KEY, entries)
        return entries

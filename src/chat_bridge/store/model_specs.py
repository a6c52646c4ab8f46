from __future__ import annotations

import json
import sqlite3

from chat_bridge.store.models import ModelSpec
from chat_bridge.store.store import ChatStore, utc_now


class ModelSpecRepository:
    """Administrator-managed model presets, looked up by spec name."""

    def __init__(self, store: ChatStore):
        self._store = store

    def find_by_spec(self, spec: str) -> ModelSpec | None:
        row = self._store.fetchone(
            "SELECT * FROM model_specs WHERE spec = ? AND is_active = 1 LIMIT 1",
            (spec,),
        )
        return self._row_to_spec(row) if row is not None else None

    def list_active(self) -> list[ModelSpec]:
        rows = self._store.fetchall(
            "SELECT * FROM model_specs WHERE is_active = 1 ORDER BY sort_order ASC, label ASC"
        )
        return [self._row_to_spec(row) for row in rows]

    def upsert(self, spec: ModelSpec) -> ModelSpec:
        now = utc_now()
        with self._store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO model_specs (
                    spec, label, provider, model_id, system_message, temperature, top_p, top_k,
                    frequency_penalty, presence_penalty, max_tokens, stop_sequences_json,
                    icon_url, is_default, sort_order, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(spec) DO UPDATE SET
                    label = excluded.label,
                    provider = excluded.provider,
                    model_id = excluded.model_id,
                    system_message = excluded.system_message,
                    temperature = excluded.temperature,
                    top_p = excluded.top_p,
                    top_k = excluded.top_k,
                    frequency_penalty = excluded.frequency_penalty,
                    presence_penalty = excluded.presence_penalty,
                    max_tokens = excluded.max_tokens,
                    stop_sequences_json = excluded.stop_sequences_json,
                    icon_url = excluded.icon_url,
                    is_default = excluded.is_default,
                    sort_order = excluded.sort_order,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    spec.spec,
                    spec.label,
                    spec.provider,
                    spec.model_id,
                    spec.system_message,
                    spec.temperature,
                    spec.top_p,
                    spec.top_k,
                    spec.frequency_penalty,
                    spec.presence_penalty,
                    spec.max_tokens,
                    json.dumps(list(spec.stop_sequences), ensure_ascii=True),
                    spec.icon_url,
                    1 if spec.is_default else 0,
                    spec.sort_order,
                    1 if spec.is_active else 0,
                    now,
                    now,
                ),
            )
        return spec

    def delete(self, spec: str) -> bool:
        with self._store.transaction() as conn:
            cursor = conn.execute("DELETE FROM model_specs WHERE spec = ?", (spec,))
        return cursor.rowcount > 0

    def _row_to_spec(self, row: sqlite3.Row) -> ModelSpec:
        try:
            stop_sequences = json.loads(row["stop_sequences_json"] or "[]")
        except json.JSONDecodeError:
            stop_sequences = []
        return ModelSpec(
            spec=row["spec"],
            label=row["label"],
            provider=row["provider"],
            model_id=row["model_id"],
            system_message=row["system_message"],
            temperature=row["temperature"],
            top_p=row["top_p"],
            top_k=row["top_k"],
            frequency_penalty=row["frequency_penalty"],
            presence_penalty=row["presence_penalty"],
            max_tokens=row["max_tokens"],
            stop_sequences=[str(s) for s in stop_sequences],
            icon_url=row["icon_url"],
            is_default=bool(row["is_default"]),
            sort_order=int(row["sort_order"]),
            is_active=bool(row["is_active"]),
        )

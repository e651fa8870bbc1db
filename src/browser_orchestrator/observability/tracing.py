"""Task span tracing to JSONL and optional SQLite."""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite
import structlog

from ..config import get_settings
from ..models import TraceRecord, utcnow

_logger = structlog.get_logger(__name__)


class TraceWriter:
    """Writes trace records to JSONL and optionally SQLite."""

    def __init__(self, log_path: Path, db_path: Path | None = None) -> None:
        self.log_path = log_path
        self.db_path = db_path
        self._lock = asyncio.Lock()

    async def write(self, record: TraceRecord) -> None:
        async with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(record.model_dump_json() + "\n")
        if self.db_path:
            await self._write_sqlite(record)

    async def _write_sqlite(self, record: TraceRecord) -> None:
        db_path = self.db_path
        if db_path is None:
            return
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS traces (
                    timestamp TEXT,
                    task_id TEXT,
                    component TEXT,
                    payload TEXT
                )
                """
            )
            await db.execute(
                "INSERT INTO traces VALUES (?, ?, ?, ?)",
                (
                    record.timestamp.isoformat(),
                    record.task_id,
                    record.component,
                    json.dumps(record.payload, default=str),
                ),
            )
            await db.commit()

    def tail(self, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.log_path.exists():
            return []
        lines = self.log_path.read_text(encoding="utf-8").strip().splitlines()
        return [json.loads(line) for line in lines[-limit:] if line]


_trace_writer: TraceWriter | None = None


def get_trace_writer() -> TraceWriter:
    global _trace_writer
    if _trace_writer is None:
        settings = get_settings()
        _trace_writer = TraceWriter(settings.trace_log_path, settings.trace_db_path)
    return _trace_writer


@asynccontextmanager
async def traced_span(
    writer: TraceWriter, task_id: str, component: str, payload: Optional[Dict[str, Any]] = None
) -> AsyncIterator[Dict[str, Any]]:
    """Write start/end/error records around a block.

    The yielded dict is merged into the end record, so the block can attach
    its outcome.
    """
    payload = payload or {}
    outcome: Dict[str, Any] = {}
    start = utcnow()
    await writer.write(TraceRecord(task_id=task_id, component=component, payload={"event": "start", **payload}))
    try:
        yield outcome
    except Exception as exc:
        _logger.exception("span.failed", task_id=task_id, component=component, error=str(exc))
        await writer.write(
            TraceRecord(
                task_id=task_id,
                component=component,
                payload={"event": "error", "error": str(exc), **payload},
            )
        )
        raise
    elapsed = (utcnow() - start).total_seconds()
    await writer.write(
        TraceRecord(
            task_id=task_id,
            component=component,
            payload={"event": "end", "elapsed_seconds": elapsed, **payload, **outcome},
        )
    )

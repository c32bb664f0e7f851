"""Run store: versioned, append-only item run records.

``SqlRunStore`` persists to the ``item_runs`` table; ``InMemoryRunStore``
backs local development (RUN_STORE_BACKEND=memory) and tests. Both assign
the version (1 + highest existing for the item) inside the write itself.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Protocol

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from shopscout.config import settings
from shopscout.errors import RunStoreError
from shopscout.models.contracts import ItemRun, ProductCandidate, SearchHit
from shopscout.models.db import ItemRunRow

logger = structlog.get_logger("shopscout.run_store")


class RunStore(Protocol):
    async def append_run(
        self,
        item_id: str,
        query: str,
        hits: list[SearchHit],
        ranked: list[ProductCandidate],
        trace: str,
    ) -> ItemRun: ...

    async def replace_ranked(self, run_id: str, ranked: list[ProductCandidate]) -> None: ...

    async def latest_run(self, item_id: str) -> list[ProductCandidate] | None: ...


def _hits_json(hits: list[SearchHit]) -> list[dict]:
    # Page bodies are large and re-fetchable; the audit keeps everything else.
    return [h.model_dump(mode="json", exclude={"raw_content"}) for h in hits]


def _ranked_json(ranked: list[ProductCandidate]) -> list[dict]:
    return [c.model_dump(mode="json") for c in ranked]


class InMemoryRunStore:
    def __init__(self) -> None:
        self._runs: list[ItemRun] = []
        self._lock = asyncio.Lock()

    @property
    def runs(self) -> list[ItemRun]:
        return list(self._runs)

    async def append_run(
        self,
        item_id: str,
        query: str,
        hits: list[SearchHit],
        ranked: list[ProductCandidate],
        trace: str,
    ) -> ItemRun:
        async with self._lock:
            version = 1 + max((r.version for r in self._runs if r.item_id == item_id), default=0)
            run = ItemRun(
                item_id=item_id,
                version=version,
                query=query,
                hits=[SearchHit.model_validate(h) for h in _hits_json(hits)],
                ranked=[ProductCandidate.model_validate(c) for c in _ranked_json(ranked)],
                trace=trace,
                created_at=datetime.now(UTC),
            )
            self._runs.append(run)
            return run

    async def replace_ranked(self, run_id: str, ranked: list[ProductCandidate]) -> None:
        async with self._lock:
            for run in self._runs:
                if run.id == run_id:
                    run.ranked = [ProductCandidate.model_validate(c) for c in _ranked_json(ranked)]
                    return
        raise RunStoreError(f"run {run_id} not found")

    async def latest_run(self, item_id: str) -> list[ProductCandidate] | None:
        matching = [r for r in self._runs if r.item_id == item_id]
        if not matching:
            return None
        latest = max(matching, key=lambda r: r.version)
        return [c.model_copy(deep=True) for c in latest.ranked]


class SqlRunStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str | None = None) -> SqlRunStore:
        return cls(create_async_engine(database_url or settings.database_url, pool_pre_ping=True))

    async def _insert_run(
        self,
        item_id: str,
        query: str,
        hits: list[SearchHit],
        ranked: list[ProductCandidate],
        trace: str,
    ) -> tuple[str, int]:
        async with self._sessions() as session, session.begin():
            current = await session.scalar(
                select(func.max(ItemRunRow.version)).where(ItemRunRow.item_id == item_id)
            )
            row = ItemRunRow(
                item_id=item_id,
                version=(current or 0) + 1,
                query=query,
                results_json=_hits_json(hits),
                ranked_candidates_json=_ranked_json(ranked),
                trace_text=trace,
            )
            session.add(row)
            await session.flush()
            return row.id, row.version

    async def append_run(
        self,
        item_id: str,
        query: str,
        hits: list[SearchHit],
        ranked: list[ProductCandidate],
        trace: str,
    ) -> ItemRun:
        try:
            try:
                run_id, version = await self._insert_run(item_id, query, hits, ranked, trace)
            except IntegrityError:
                # A concurrent writer took the same version; read the max again.
                logger.warning("run_store_version_conflict", item_id=item_id)
                run_id, version = await self._insert_run(item_id, query, hits, ranked, trace)
        except SQLAlchemyError as exc:
            logger.error("run_store_append_failed", item_id=item_id, error=str(exc))
            raise RunStoreError(f"could not persist run for item {item_id}") from exc

        logger.info("run_store_appended", item_id=item_id, version=version)
        return ItemRun(
            id=run_id,
            item_id=item_id,
            version=version,
            query=query,
            hits=hits,
            ranked=ranked,
            trace=trace,
        )

    async def replace_ranked(self, run_id: str, ranked: list[ProductCandidate]) -> None:
        try:
            async with self._sessions() as session, session.begin():
                result = await session.execute(
                    update(ItemRunRow)
                    .where(ItemRunRow.id == run_id)
                    .values(ranked_candidates_json=_ranked_json(ranked))
                )
        except SQLAlchemyError as exc:
            logger.error("run_store_update_failed", run_id=run_id, error=str(exc))
            raise RunStoreError(f"could not update run {run_id}") from exc
        if result.rowcount == 0:
            raise RunStoreError(f"run {run_id} not found")

    async def latest_run(self, item_id: str) -> list[ProductCandidate] | None:
        try:
            async with self._sessions() as session:
                ranked_json = await session.scalar(
                    select(ItemRunRow.ranked_candidates_json)
                    .where(ItemRunRow.item_id == item_id)
                    .order_by(ItemRunRow.version.desc())
                    .limit(1)
                )
        except SQLAlchemyError as exc:
            logger.error("run_store_read_failed", item_id=item_id, error=str(exc))
            raise RunStoreError(f"could not read runs for item {item_id}") from exc
        if ranked_json is None:
            return None
        return [ProductCandidate.model_validate(c) for c in ranked_json]

    async def ping(self) -> None:
        async with self._engine.connect() as conn:
            await conn.execute(select(1))

    async def close(self) -> None:
        await self._engine.dispose()


def build_run_store() -> RunStore:
    if settings.run_store_backend == "memory":
        return InMemoryRunStore()
    return SqlRunStore.from_url()

"""
Snapshot storage on the SQLAlchemy async engine.

A snapshot row is committed before SnapshotService.capture returns, which is
what makes it readable by restore before any write is issued.
"""

from datetime import datetime

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import DateTime, Index, String, Text, delete, select
from sqlalchemy.ext.asyncio import (
    AsyncAttrs,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from sheetguard.remote.models import ValueRange


class Base(AsyncAttrs, DeclarativeBase):
    pass


class SnapshotDB(Base):
    """Captured pre-mutation state of one or more regions of a document."""

    __tablename__ = "snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("idx_snapshot_expiry", "expires_at"),)

    def __repr__(self) -> str:
        return f"<Snapshot(id={self.id}, document={self.document_id})>"


class SnapshotRecord(BaseModel):
    """Everything needed to regenerate the pre-mutation values."""

    snapshot_id: str
    document_id: str
    ranges: list[ValueRange] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class SnapshotStore:
    """
    Repository for SnapshotRecords.

    Usage:
        store = SnapshotStore("sqlite+aiosqlite:///./snapshots.db")
        await store.init()
        await store.save(record)
        await store.close()
    """

    def __init__(self, database_url: str = "sqlite+aiosqlite:///:memory:", echo: bool = False):
        self.database_url = database_url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Create the engine and the table. Safe to call more than once."""
        if self._engine is not None:
            return

        kwargs = {}
        if ":memory:" in self.database_url:
            # One shared connection, otherwise every checkout sees an empty database.
            kwargs["poolclass"] = StaticPool
        self._engine = create_async_engine(self.database_url, echo=self._echo, **kwargs)
        self._session_factory = async_sessionmaker(
            bind=self._engine, class_=AsyncSession, expire_on_commit=False
        )
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Snapshot store not initialized. Call init() first.")
        return self._session_factory

    async def save(self, record: SnapshotRecord) -> None:
        async with self._sessions()() as session:
            session.add(
                SnapshotDB(
                    id=record.snapshot_id,
                    document_id=record.document_id,
                    payload=record.model_dump_json(),
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                )
            )
            await session.commit()

    async def get(self, snapshot_id: str) -> SnapshotRecord | None:
        async with self._sessions()() as session:
            row = await session.get(SnapshotDB, snapshot_id)
            if row is None:
                return None
            return SnapshotRecord.model_validate_json(row.payload)

    async def delete(self, snapshot_id: str) -> bool:
        async with self._sessions()() as session:
            result = await session.execute(delete(SnapshotDB).where(SnapshotDB.id == snapshot_id))
            await session.commit()
            return result.rowcount > 0

    async def list_ids(self, document_id: str) -> list[str]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(SnapshotDB.id)
                .where(SnapshotDB.document_id == document_id)
                .order_by(SnapshotDB.created_at)
            )
            return list(result.scalars().all())

    async def prune_expired(self, now: datetime) -> int:
        """Delete snapshots past their retention window."""
        async with self._sessions()() as session:
            result = await session.execute(delete(SnapshotDB).where(SnapshotDB.expires_at <= now))
            await session.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.debug(f"[SnapshotStore] Pruned {deleted} expired snapshots")
        return deleted

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

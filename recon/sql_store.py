"""SQL-backed document store using SQLAlchemy 2.x async sessions.

Each batch commits in one transaction, so a batch is applied entirely or
not at all.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from . import paths
from .db import get_sessionmaker
from .exceptions import StoreError, TransientStoreError
from .models import DocumentRecord
from .store import ChangeEvent, Document, DocumentStore, WriteOp, apply_op, build_event, matches

logger = logging.getLogger(__name__)


def tenant_of(path: str) -> str | None:
    """Tenant id encoded in a ``tenants/{tenantId}/...`` path."""
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == paths.TENANTS:
        return parts[1]
    return None


class SqlDocumentStore(DocumentStore):
    """Document store persisting into the ``documents`` table."""

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        super().__init__()
        self._sessionmaker: async_sessionmaker[AsyncSession] = get_sessionmaker(engine)

    async def get(self, path: str) -> Document | None:
        try:
            async with self._sessionmaker() as session:
                record = await session.get(DocumentRecord, path.strip("/"))
        except OperationalError as e:
            raise TransientStoreError(f"Read of {path} failed: {e}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Read of {path} failed: {e}") from e
        if record is None:
            return None
        return Document(path=record.path, data=copy.deepcopy(record.data))

    async def list(self, collection: str, where: Mapping[str, Any] | None = None) -> list[Document]:
        query = (
            select(DocumentRecord)
            .where(DocumentRecord.collection == collection.strip("/"))
            .order_by(DocumentRecord.created_at, DocumentRecord.path)
        )
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(query)
                records = result.scalars().all()
        except OperationalError as e:
            raise TransientStoreError(f"Scan of {collection} failed: {e}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Scan of {collection} failed: {e}") from e

        return [
            Document(path=r.path, data=copy.deepcopy(r.data))
            for r in records
            if matches(r.data, where)
        ]

    async def _commit(self, ops: Sequence[WriteOp]) -> list[ChangeEvent]:
        targets = {op.path.strip("/") for op in ops}
        events: list[ChangeEvent] = []
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    result = await session.execute(
                        select(DocumentRecord).where(DocumentRecord.path.in_(targets))
                    )
                    records = {r.path: r for r in result.scalars().all()}

                    staged: dict[str, dict[str, Any] | None] = {}
                    for op in ops:
                        path = op.path.strip("/")
                        if path in staged:
                            before = staged[path]
                        else:
                            before = records[path].data if path in records else None
                        after = apply_op(before, op)
                        staged[path] = after
                        event = build_event(path, before, after)
                        if event is not None:
                            events.append(event)

                    for path, data in staged.items():
                        record = records.get(path)
                        if data is None:
                            if record is not None:
                                await session.delete(record)
                        elif record is not None:
                            record.data = data
                        else:
                            parent, doc_id = paths.split(path)
                            session.add(DocumentRecord(
                                path=path,
                                collection=parent,
                                doc_id=doc_id,
                                tenant_id=tenant_of(path),
                                data=data,
                            ))
        except OperationalError as e:
            raise TransientStoreError(f"Batch of {len(ops)} writes failed: {e}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Batch of {len(ops)} writes failed: {e}") from e

        logger.debug(f"Committed SQL batch: {len(ops)} ops, {len(events)} changes")
        return events

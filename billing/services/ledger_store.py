import logging
from dataclasses import dataclass
from typing import Any, Generic, Optional, Protocol, TypeVar
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from billing.core.exceptions import LedgerUnavailable

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT")


class DedupKey(Protocol):
    def columns(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class InsertResult(Generic[RowT]):
    inserted: bool
    row: RowT


class LedgerStore(Protocol[RowT]):
    """
    The whole persistence surface the guards need. Any transactional store
    with a uniqueness constraint and a conditional update satisfies it.
    """

    async def insert_if_absent(self, key: DedupKey, initial_row: dict[str, Any]) -> InsertResult[RowT]: ...

    async def update_by_key(self, key: DedupKey, patch: dict[str, Any],
                            expected: Optional[dict[str, Any]] = None) -> bool: ...

    async def find_by_key(self, key: DedupKey) -> Optional[RowT]: ...


class SQLAlchemyLedgerStore(Generic[RowT]):
    """
    Ledger over one mapped table. Every call is its own short transaction,
    nothing is held open across the effect.
    """

    def __init__(self, model: type[RowT], session_factory: async_sessionmaker):
        self.model = model
        self.session_factory = session_factory

    def _where(self, stmt, key: DedupKey, expected: Optional[dict[str, Any]] = None):
        for column, value in {**key.columns(), **(expected or {})}.items():
            stmt = stmt.where(getattr(self.model, column) == value)
        return stmt

    async def find_by_key(self, key: DedupKey) -> Optional[RowT]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(self._where(select(self.model), key))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"failed to read {self.model.__tablename__} row {key}: {e}", exc_info=True)
            raise LedgerUnavailable("failed to read ledger row") from e

    async def insert_if_absent(self, key: DedupKey, initial_row: dict[str, Any]) -> InsertResult[RowT]:
        try:
            async with self.session_factory() as session:
                row = self.model(**key.columns(), **initial_row)
                session.add(row)
                try:
                    await session.commit()
                    return InsertResult(inserted=True, row=row)
                except IntegrityError:
                    # unique constraint: somebody got there first
                    await session.rollback()
        except SQLAlchemyError as e:
            logger.error(f"failed to insert {self.model.__tablename__} row {key}: {e}", exc_info=True)
            raise LedgerUnavailable("failed to insert ledger row") from e

        existing = await self.find_by_key(key)
        if existing is None:
            # integrity error that was not the dedup constraint (e.g. unknown foreign key)
            logger.error(f"insert of {key} violated a constraint but no existing row was found")
            raise LedgerUnavailable("ledger insert rejected by the store")
        return InsertResult(inserted=False, row=existing)

    async def update_by_key(self, key: DedupKey, patch: dict[str, Any],
                            expected: Optional[dict[str, Any]] = None) -> bool:
        """
        Apply patch to the row for key. With expected, this is a compare-and-swap:
        the row only changes if every expected column still holds its value.
        Returns True when a row was updated.
        """
        stmt = (self._where(update(self.model), key, expected)
                .values(**patch)
                .execution_options(synchronize_session=False))
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"failed to update {self.model.__tablename__} row {key}: {e}", exc_info=True)
            raise LedgerUnavailable("failed to update ledger row") from e

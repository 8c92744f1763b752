"""SQLModel entity store over an async SQLAlchemy engine.

Entities are SQLModel table models; the identifier is the model's single
primary-key column. ``Specification`` predicates are pushed down as ``WHERE``
clauses, plain callables are evaluated in Python over ordered pages.
"""

from operator import attrgetter

import asyncio
import typing as t
from contextlib import asynccontextmanager, contextmanager
from pydantic import Field
from pydantic_settings import SettingsConfigDict
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from strata.errors import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    StoreError,
)
from strata.logger import get_logger
from strata.repository.specifications import Specification

from ._base import (
    KeyFilter,
    Predicate,
    StoreBase,
    StoreBaseSettings,
    StoreSession,
    scan_matching,
)

logger = get_logger(__name__)


class SqlStoreSettings(StoreBaseSettings):
    model_config = SettingsConfigDict(env_prefix="STRATA_SQL_")

    url: str = "sqlite+aiosqlite:///strata.db"
    echo: bool = False
    create_tables: bool = Field(
        default=True,
        description="Create the model's table on first use if it does not exist",
    )
    engine_kwargs: dict[str, t.Any] = {}


class SqlSession[EntityType: SQLModel, IDType](StoreSession[EntityType, IDType]):
    def __init__(
        self, store: "SqlStore[EntityType, IDType]", session: AsyncSession
    ) -> None:
        self._store = store
        self._session = session
        self._model = store.entity_type
        self._pk = getattr(store.entity_type, store.primary_key)

    @contextmanager
    def _translate(
        self, operation: str, entity_id: t.Any = None
    ) -> t.Iterator[None]:
        name = self._store.entity_name
        try:
            yield
        except IntegrityError as e:
            raise ConstraintViolationError(name, entity_id, operation) from e
        except SQLAlchemyError as e:
            msg = f"{operation} on {name} failed: {e}"
            raise StoreError(msg, entity_type=name, operation=operation) from e

    async def _page(self, after: IDType | None, limit: int | None) -> list[EntityType]:
        statement = select(self._model).order_by(self._pk)
        if after is not None:
            statement = statement.where(self._pk > after)
        if limit is not None:
            statement = statement.limit(limit)
        with self._translate("scan"):
            result = await self._session.exec(statement)
            return list(result.all())

    async def get(self, entity_id: IDType) -> EntityType | None:
        with self._translate("get", entity_id):
            return await self._session.get(self._model, entity_id)

    async def scan(
        self,
        after: IDType | None = None,
        limit: int | None = None,
        key_filter: KeyFilter | None = None,
    ) -> list[EntityType]:
        if key_filter is None:
            return await self._page(after, limit)
        return await scan_matching(
            self._page,
            self._store.key,
            self._store.settings.scan_page_size,
            after=after,
            limit=limit,
            key_filter=key_filter,
        )

    async def filter(self, predicate: Predicate) -> list[EntityType]:
        if isinstance(predicate, Specification):
            statement = (
                select(self._model)
                .where(predicate.to_clause(self._model))
                .order_by(self._pk)
            )
            with self._translate("filter"):
                result = await self._session.exec(statement)
                return list(result.all())
        return await scan_matching(
            self._page,
            self._store.key,
            self._store.settings.scan_page_size,
            accept=predicate,
        )

    async def add(self, entity: EntityType) -> None:
        entity_id = self._store.key(entity)
        with self._translate("add", entity_id):
            self._session.add(entity)
            await self._session.flush()

    async def update(self, entity: EntityType) -> None:
        entity_id = self._store.key(entity)
        with self._translate("update", entity_id):
            if await self._session.get(self._model, entity_id) is None:
                raise ConcurrencyConflictError(
                    self._store.entity_name, entity_id, "update"
                )
            await self._session.merge(entity)
            await self._session.flush()

    async def delete(self, entity: EntityType) -> None:
        entity_id = self._store.key(entity)
        with self._translate("delete", entity_id):
            current = await self._session.get(self._model, entity_id)
            if current is None:
                raise ConcurrencyConflictError(
                    self._store.entity_name, entity_id, "delete"
                )
            await self._session.delete(current)
            await self._session.flush()

    async def add_many(self, entities: t.Sequence[EntityType]) -> None:
        ids = [self._store.key(entity) for entity in entities]
        with self._translate("bulk_insert", ids):
            self._session.add_all(entities)
            await self._session.flush()


class SqlStore[EntityType: SQLModel, IDType](StoreBase[EntityType, IDType]):
    """Entity store backed by a relational database through SQLModel."""

    settings: SqlStoreSettings

    def __init__(
        self,
        entity_type: type[EntityType],
        settings: SqlStoreSettings | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        columns = list(entity_type.__table__.primary_key.columns)  # type: ignore[attr-defined]
        if len(columns) != 1:
            msg = f"{entity_type.__name__} must have exactly one primary-key column"
            raise ValueError(msg)
        self.primary_key: str = columns[0].key
        super().__init__(
            entity_type, attrgetter(self.primary_key), settings or SqlStoreSettings()
        )
        self._engine = engine
        self._owns_engine = engine is None
        self._ready = False
        self._init_lock: asyncio.Lock | None = None

    def _create_engine(self) -> AsyncEngine:
        logger.debug(f"Creating SQL engine for {self.entity_name}")
        return create_async_engine(
            self.settings.url, echo=self.settings.echo, **self.settings.engine_kwargs
        )

    async def get_engine(self) -> AsyncEngine:
        if self._ready and self._engine is not None:
            return self._engine
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._engine is None:
                self._engine = self._create_engine()
            if not self._ready:
                if self.settings.create_tables:
                    await self._create_table(self._engine)
                self._ready = True
        return self._engine

    async def _create_table(self, engine: AsyncEngine) -> None:
        table = self.entity_type.__table__  # type: ignore[attr-defined]
        try:
            async with engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all, tables=[table])
        except SQLAlchemyError as e:
            msg = f"Could not create table for {self.entity_name}: {e}"
            raise StoreError(msg, entity_type=self.entity_name, operation="init") from e

    @asynccontextmanager
    async def session(self) -> t.AsyncIterator[SqlSession[EntityType, IDType]]:
        engine = await self.get_engine()
        async with AsyncSession(engine, expire_on_commit=False) as session:
            store_session = SqlSession(self, session)
            yield store_session
            with store_session._translate("commit"):
                await session.commit()

    async def _cleanup_resources(self) -> None:
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            logger.debug(f"Disposed SQL engine for {self.entity_name}")
        self._engine = None
        self._ready = False

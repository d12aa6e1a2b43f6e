from __future__ import annotations
from contextlib import contextmanager
from typing import (
    Any,
    Callable,
    Generic,
    Iterator,
    Sequence,
    Type,
    TypeVar,
)
from sqlalchemy import (
    ColumnExpressionArgument,
    Engine,
    select,
    create_engine,
    asc,
    desc,
)
from sqlalchemy.orm import Session, sessionmaker

from sql_chatbot.models.base import Base

V = TypeVar("V", bound=Type)


class Database:
    """
    Process-wide handle on the application store.

    Created once at start-up and disposed at shutdown; every CRUD helper
    borrows sessions from the same engine.
    """

    def __init__(self, url: str, **engine_kwargs: Any) -> None:
        self.url = url
        self.engine: Engine = create_engine(url, **engine_kwargs)
        self.session_factory: Callable[..., Session] = sessionmaker(
            self.engine, expire_on_commit=False
        )

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


_database: Database | None = None


def init_database(url: str, **engine_kwargs: Any) -> Database:
    global _database
    if _database is not None:
        return _database
    _database = Database(url, **engine_kwargs)
    _database.create_all()
    return _database


def set_database(database: Database | None) -> None:
    global _database
    _database = database


def get_database() -> Database:
    if _database is None:
        raise RuntimeError("Database is not initialised; call init_database() first")
    return _database


def close_database() -> None:
    global _database
    if _database is not None:
        _database.dispose()
        _database = None


class CRUDCapability(Generic[V]):
    resource_db: Type[V]

    def __init__(self, resource_db: Type[V]) -> None:
        self.resource_db = resource_db

    def db_row_to_model(self, row: V):
        return {field.name: getattr(row, field.name) for field in row.__table__.c}

    def db_rows_to_model_list(self, rows: Sequence[V]) -> list[dict]:
        return [
            {field.name: getattr(r, field.name) for field in r.__table__.c}
            for r in rows
        ]

    def _order_clauses(self, order_by: list[str]) -> list:
        order_by_clauses = []
        for item in order_by:
            if item.startswith("-"):
                column = getattr(self.resource_db, item[1:])
                order_by_clauses.append(desc(column))
            else:
                column = getattr(self.resource_db, item)
                order_by_clauses.append(asc(column))
        return order_by_clauses

    def list_resource(
        self,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        order_by: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        stmt = select(self.resource_db)
        if where is not None:
            stmt = stmt.where(*where)
        if order_by is not None:
            stmt = stmt.order_by(*self._order_clauses(order_by))
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset is not None:
            stmt = stmt.offset(offset)

        with get_database().session() as session:
            resources = session.scalars(stmt).all()
            return self.db_rows_to_model_list(resources)

    def get_resource(
        self,
        resource_id: str | None,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
    ) -> dict[str, Any] | None:
        stmt = select(self.resource_db)
        if resource_id is not None:
            stmt = stmt.where(self.resource_db.id == resource_id)  # type: ignore
        if where is not None:
            stmt = stmt.where(*where)
        with get_database().session() as session:
            resource = session.scalars(stmt).first()
            if resource is None:
                return None
            return self.db_row_to_model(resource)

    def create_resource(
        self,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        resource = self.resource_db(**data)  # type: ignore
        with get_database().transaction() as session:
            session.add(resource)
            session.flush()
            session.refresh(resource)
            return self.db_row_to_model(resource)  # type: ignore

    def update_resource(
        self,
        data: dict[str, Any] | None,
        resource_id: str | None = None,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
    ) -> dict[str, Any] | None:
        if resource_id is None:
            stmt = select(self.resource_db)  # type: ignore
        else:
            stmt = select(self.resource_db).where(self.resource_db.id == resource_id)  # type: ignore
        if where is not None:
            stmt = stmt.where(*where)
        with get_database().transaction() as session:
            resource = session.scalars(stmt).first()
            if resource is None:
                return None
            if data is not None:
                for k in data:
                    setattr(resource, k, data[k])
            session.add(resource)
            session.flush()
            session.refresh(resource)
            return self.db_row_to_model(resource)

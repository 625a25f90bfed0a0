"""
Persisted correspondence between local and remote identities

One row links a local entity id to the id the remote SCIM server assigned to it,
scoped by resource type, tenant and connector. The caller owns the SQLAlchemy
session (and therefore the transaction); the store only flushes, inside savepoints.
"""

from __future__ import annotations

import logging
from typing import List

from sqlalchemy import Engine, String, UniqueConstraint, create_engine, event, inspect, select
from sqlalchemy.exc import IntegrityError, MultipleResultsFound, NoResultFound, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from exceptions import MappingConflictError, MappingLookupError, MappingNotFound


logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ResourceMapping(Base):
    __tablename__ = "scim_resource_mappings"
    __table_args__ = (
        UniqueConstraint(
            "resource_type",
            "tenant_id",
            "connector_id",
            "external_id",
            name="uq_scim_resource_mapping_external_id",
        ),
    )

    resource_type: Mapped[str] = mapped_column(String(length=32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    connector_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    local_id: Mapped[str] = mapped_column(String(length=1024), primary_key=True)
    external_id: Mapped[str] = mapped_column(String(length=255), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ResourceMapping type={self.resource_type} tenant={self.tenant_id} "
            f"connector={self.connector_id} local={self.local_id} external={self.external_id}>"
        )


class MappingStore:
    """Keyed queries over the mapping table for one tenant and connector."""

    def __init__(self, session: Session, tenant_id: str, connector_id: str):
        self.session = session
        self.tenant_id = tenant_id
        self.connector_id = connector_id

    def _select(self, resource_type: str):
        return select(ResourceMapping).where(
            ResourceMapping.resource_type == resource_type,
            ResourceMapping.tenant_id == self.tenant_id,
            ResourceMapping.connector_id == self.connector_id,
        )

    def _one(self, stmt, description: str) -> ResourceMapping:
        try:
            return self.session.scalars(stmt).one()
        except NoResultFound:
            raise MappingNotFound(f"No mapping for {description}")
        except MultipleResultsFound as e:
            raise MappingLookupError(f"Several mappings for {description}") from e
        except SQLAlchemyError as e:
            raise MappingLookupError(f"Mapping lookup for {description} failed: {e}") from e

    def find_by_local_id(self, resource_type: str, local_id: str) -> ResourceMapping:
        stmt = self._select(resource_type).where(ResourceMapping.local_id == local_id)
        return self._one(stmt, f"{resource_type} with local id {local_id}")

    def find_by_external_id(self, resource_type: str, external_id: str) -> ResourceMapping:
        stmt = self._select(resource_type).where(ResourceMapping.external_id == external_id)
        return self._one(stmt, f"{resource_type} with external id {external_id}")

    def all(self, resource_type: str) -> List[ResourceMapping]:
        return list(self.session.scalars(self._select(resource_type)).all())

    def new_mapping(self, resource_type: str, local_id: str, external_id: str) -> ResourceMapping:
        return ResourceMapping(
            resource_type=resource_type,
            tenant_id=self.tenant_id,
            connector_id=self.connector_id,
            local_id=local_id,
            external_id=external_id,
        )

    # Writes run in a SAVEPOINT, a failed write leaves the outer transaction usable

    def save(self, mapping: ResourceMapping) -> None:
        try:
            with self.session.begin_nested():
                self.session.add(mapping)
                self.session.flush()
        except IntegrityError as e:
            raise MappingConflictError(f"Cannot save {mapping!r}: {e.orig}") from e
        logger.debug(f"Saved {mapping!r}")

    def update_external_id(self, mapping: ResourceMapping, external_id: str) -> ResourceMapping:
        """Point an existing row at a different remote resource."""
        try:
            with self.session.begin_nested():
                mapping = self.session.merge(mapping)
                mapping.external_id = external_id
                self.session.flush()
        except IntegrityError as e:
            raise MappingConflictError(f"Cannot point {mapping!r} at {external_id}: {e.orig}") from e
        logger.debug(f"Updated {mapping!r}")
        return mapping

    def delete(self, mapping: ResourceMapping) -> None:
        """Remove a row; the given instance may be detached or freshly built."""
        with self.session.begin_nested():
            attached = self.session.merge(mapping)
            if inspect(attached).pending:
                # Nothing stored under that key
                self.session.expunge(attached)
                logger.debug(f"No stored row for {mapping!r}, nothing to delete")
                return
            self.session.delete(attached)
            self.session.flush()
        logger.debug(f"Deleted {mapping!r}")


def create_mapping_engine(url: str) -> Engine:
    """
    Engine for the mapping database.

    pysqlite starts transactions lazily and so breaks SAVEPOINT; for SQLite
    the driver's own transaction handling is disabled and BEGIN is emitted
    by SQLAlchemy instead.
    """
    engine = create_engine(url)
    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")
    return engine

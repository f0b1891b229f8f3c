"""
Persistence layer for the Pramaan core.

All durable state lives in five SQLAlchemy tables. Cross-request safety is
delegated to the database: unique indexes make registry inserts and session
nullifier inserts atomic, and conditional UPDATEs retire challenges and
advance attendance records without a read-then-write window.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

import structlog
from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .exceptions import StorageError
from .utils import utc_now

# Initialize structured logger
logger = structlog.get_logger(__name__)


class UTCDateTime(TypeDecorator):
    """Stores aware datetimes as naive UTC and returns them aware again."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise StorageError("naive datetime cannot be persisted")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class RegistryEntry(Base):
    """
    One biometric enrollment.

    ``template_tag`` and ``active_slot`` are cleared on revocation so the
    scholar can re-enroll; ``commitment`` and ``nullifier`` stay reserved.
    """

    __tablename__ = "biometric_registry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    biometric_type: Mapped[str] = mapped_column(String(16), nullable=False)
    commitment: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    nullifier: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    template_tag: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    # "scholar|type" while active, NULL once revoked
    active_slot: Mapped[Optional[str]] = mapped_column(String(160), unique=True)
    owner_scholar_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(128))
    salt: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(128))
    revocation_reason: Mapped[Optional[str]] = mapped_column(Text)


class ChallengeRow(Base):
    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    nonce: Mapped[str] = mapped_column(String(64), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    geofence_json: Mapped[Optional[str]] = mapped_column(Text)
    geofence_token: Mapped[str] = mapped_column(String(64), nullable=False)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    # Digest of the proof that retired the challenge
    consumed_by: Mapped[Optional[str]] = mapped_column(String(64))


class SessionNullifierRow(Base):
    __tablename__ = "session_nullifiers"

    value: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    window_key: Mapped[str] = mapped_column(String(256), nullable=False)
    proof_id: Mapped[str] = mapped_column(String(64), nullable=False)
    nullifier: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    consumed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class AttendanceRow(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        Index("ix_attendance_scholar_created", "scholar_id", "created_at"),
        Index("ix_attendance_org_status_created", "organization_id", "status", "created_at"),
    )

    proof_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scholar_id: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    attendance_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32))
    challenge_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    biometric_type: Mapped[str] = mapped_column(String(16), nullable=False)
    proof_json: Mapped[str] = mapped_column(Text, nullable=False)
    public_inputs_json: Mapped[str] = mapped_column(Text, nullable=False)
    proof_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)


class StatusOverrideRow(Base):
    __tablename__ = "status_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proof_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    admin_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class Database:
    """
    Engine and session factory for one database URL.

    Parameters
    ----------
    url : str
        SQLAlchemy database URL.
    echo : bool, default=False
        Log emitted SQL.

    Examples
    --------
    >>> db = Database("sqlite://")
    >>> db.create_all()
    >>> with db.transaction() as session:
    ...     session.add(row)
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.engine: Engine = create_engine(url, echo=echo, **self._engine_options(url))

        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _configure_sqlite)

        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info("Database initialized", dialect=self.engine.dialect.name)

    @staticmethod
    def _engine_options(url: str) -> dict:
        if not url.startswith("sqlite"):
            return {"pool_pre_ping": True}

        options = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        # In-memory databases exist per connection, so all sessions share one
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options

    def create_all(self) -> None:
        """Create every table and index that does not exist yet."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create schema: {e}") from e
        logger.info("Database schema ready", tables=sorted(Base.metadata.tables))

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only session; nothing is committed."""
        session = self._sessions()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Session wrapped in one transaction.

        Commits on normal exit and rolls back on any exception.
        ``IntegrityError`` propagates unchanged so callers can classify
        unique-index conflicts; other database failures become
        ``StorageError``.
        """
        session = self._sessions()
        try:
            with session.begin():
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error("Database transaction failed", error=str(e), error_type=type(e).__name__)
            raise StorageError(f"Database transaction failed: {e}") from e
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

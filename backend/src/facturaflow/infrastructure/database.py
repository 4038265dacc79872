"""
Database models and session management with SQLAlchemy.

Uses async SQLAlchemy for non-blocking database operations. The relational
store owns all structured state; file locations are only ever referenced
from the file-reference tables.

Design Decisions:
- AsyncSession for non-blocking operations
- One Database object per process, built at startup and passed around
- Explicit transaction management (session-per-stage)
- Natural keys (issuer RFC, invoice UUID) carry unique constraints
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, ClassVar
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Issuer(TimestampMixin, Base):
    """
    The party that issues invoices, keyed by RFC.

    Fiscal fields are overwritten on every submission (last write wins).
    """
    __tablename__ = "issuers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    rfc: Mapped[str] = mapped_column(String(13), unique=True, index=True)
    fiscal_name: Mapped[str] = mapped_column(String(256))
    fiscal_regime_code: Mapped[str | None] = mapped_column(String(10))
    fiscal_zip_code: Mapped[str | None] = mapped_column(String(5))
    email: Mapped[str | None] = mapped_column(String(256))
    phone: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default="active")


class Project(Base):
    """Reference catalogue of projects invoices are billed against."""
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(256))
    description: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Invoice(TimestampMixin, Base):
    """
    A registered CFDI invoice.

    Created once per UUID with status pending_review. Later status changes
    belong to the review workflow, never to ingestion.
    """
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    issuer_id: Mapped[str] = mapped_column(String(36), ForeignKey("issuers.id"), index=True)
    project_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("projects.id"))

    # Identification
    uuid: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    folio: Mapped[str | None] = mapped_column(String(64))
    series: Mapped[str | None] = mapped_column(String(32))
    invoice_date: Mapped[date] = mapped_column(Date)
    certification_date: Mapped[str | None] = mapped_column(String(32))
    sat_cert_number: Mapped[str | None] = mapped_column(String(32))

    # Issuer / receiver fiscal data as stamped on the document
    issuer_rfc: Mapped[str] = mapped_column(String(13))
    issuer_name: Mapped[str] = mapped_column(String(256))
    issuer_regime: Mapped[str | None] = mapped_column(String(10))
    issuer_zip_code: Mapped[str | None] = mapped_column(String(5))
    receiver_rfc: Mapped[str] = mapped_column(String(13))
    receiver_name: Mapped[str | None] = mapped_column(String(256))
    receiver_regime: Mapped[str | None] = mapped_column(String(10))
    receiver_zip_code: Mapped[str | None] = mapped_column(String(5))
    cfdi_use: Mapped[str | None] = mapped_column(String(10))

    # Payment
    payment_method: Mapped[str] = mapped_column(String(3))
    payment_form: Mapped[str | None] = mapped_column(String(10))
    payment_conditions: Mapped[str | None] = mapped_column(String(256))

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    retention_iva: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    retention_iva_rate: Mapped[Decimal] = mapped_column(Numeric(7, 6), default=Decimal("0"))
    retention_isr: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    retention_isr_rate: Mapped[Decimal] = mapped_column(Numeric(7, 6), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3), default="MXN")
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("1"))
    payment_week: Mapped[int | None] = mapped_column(Integer)
    payment_year: Mapped[int | None] = mapped_column(Integer)

    # Payment program
    payment_program: Mapped[str] = mapped_column(String(16), default="standard")
    pronto_pago_fee_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0"))
    pronto_pago_fee_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    net_payment_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))

    # Late submissions
    is_late: Mapped[bool] = mapped_column(Boolean, default=False)
    late_reason: Mapped[str | None] = mapped_column(String(32))
    late_acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    needs_project_review: Mapped[bool] = mapped_column(Boolean, default=False)
    contact_email: Mapped[str | None] = mapped_column(String(256))
    contact_phone: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32), index=True)


class InvoiceItem(Base):
    """Invoice concept line. Written once in bulk, ordered by line_number."""
    __tablename__ = "invoice_items"
    __table_args__ = (UniqueConstraint("invoice_id", "line_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), index=True)
    line_number: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(Text)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("1"))
    unit: Mapped[str | None] = mapped_column(String(64))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    product_key: Mapped[str | None] = mapped_column(String(16))
    tax_object: Mapped[str | None] = mapped_column(String(8))


class FileReferenceMixin(TimestampMixin):
    """
    Location of one artifact across both storage tiers.

    The primary tier creates the row; the backup tier only ever updates it.
    """
    owner_key: ClassVar[str]

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(16))
    file_name: Mapped[str] = mapped_column(String(256))
    storage_path: Mapped[str] = mapped_column(String(512))
    public_url: Mapped[str] = mapped_column(String(1024))
    backup_file_id: Mapped[str | None] = mapped_column(String(128))
    backup_url: Mapped[str | None] = mapped_column(String(1024))


class FileReference(FileReferenceMixin, Base):
    __tablename__ = "invoice_files"
    __table_args__ = (UniqueConstraint("invoice_id", "kind"),)
    owner_key = "invoice_id"

    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), index=True)


class CreditNote(Base):
    """Credit note (CFDI type E) linked 1:1 to a pronto pago invoice."""
    __tablename__ = "credit_notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), unique=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    folio: Mapped[str | None] = mapped_column(String(64))
    series: Mapped[str | None] = mapped_column(String(32))
    related_uuid: Mapped[str | None] = mapped_column(String(36))
    relation_type: Mapped[str | None] = mapped_column(String(8))
    issuer_rfc: Mapped[str] = mapped_column(String(13))
    issuer_name: Mapped[str | None] = mapped_column(String(256))
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3), default="MXN")
    issue_date: Mapped[date] = mapped_column(Date)
    certification_date: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32), default="pending_review")


class CreditNoteFile(FileReferenceMixin, Base):
    __tablename__ = "credit_note_files"
    __table_args__ = (UniqueConstraint("credit_note_id", "kind"),)
    owner_key = "credit_note_id"

    credit_note_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("credit_notes.id"), index=True
    )


def _engine_options(url: str) -> dict[str, Any]:
    """SQLite gets no pool (connections are cheap and loop-bound)."""
    if url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
    }


class Database:
    """
    Owns the async engine and session factory.

    Built once at application startup and injected into every service
    that touches the relational store.

    Usage:
        async with database.session() as session:
            session.add(record)
            await session.commit()
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.engine = create_async_engine(url, echo=echo, **_engine_options(url))
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info(f"Database engine created for {self.engine.url.get_backend_name()}")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session; anything not committed is rolled back on error."""
        session = self.session_factory()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """
        Create missing tables.

        Call this on application startup. In production, use migrations instead.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    async def dispose(self) -> None:
        """Close database connections on shutdown."""
        await self.engine.dispose()
        logger.info("Database connections closed")

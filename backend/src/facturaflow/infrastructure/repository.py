"""
Query and write helpers over the relational store.

Every function takes an open AsyncSession and leaves commit/rollback to the
caller, so a service can group several writes into one transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .database import CreditNote, FileReferenceMixin, Invoice, InvoiceItem, Issuer, Project

logger = logging.getLogger(__name__)

ISSUER_UPDATE_FIELDS = (
    "fiscal_name",
    "fiscal_regime_code",
    "fiscal_zip_code",
    "email",
    "phone",
)


def _upsert_statement(session: AsyncSession, model: type) -> Any:
    """INSERT ... ON CONFLICT for the session's dialect."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


async def find_invoice_id_by_uuid(session: AsyncSession, uuid: str) -> str | None:
    """Return the id of the invoice registered under `uuid`, if any."""
    result = await session.execute(
        select(Invoice.id).where(Invoice.uuid == uuid).limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_issuer(session: AsyncSession, values: dict[str, Any]) -> str:
    """
    Insert or update an issuer keyed by RFC.

    On conflict the fiscal and contact fields are overwritten.

    Returns:
        The issuer id (existing or newly generated)
    """
    stmt = _upsert_statement(session, Issuer).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["rfc"],
        set_={
            **{name: stmt.excluded[name] for name in ISSUER_UPDATE_FIELDS},
            "updated_at": datetime.now(timezone.utc),
        },
    )
    await session.execute(stmt)

    result = await session.execute(select(Issuer.id).where(Issuer.rfc == values["rfc"]))
    return result.scalar_one()


async def list_active_projects(session: AsyncSession) -> list[Project]:
    result = await session.execute(
        select(Project)
        .where(Project.is_active.is_(True))
        .order_by(Project.sort_order, Project.code)
    )
    return list(result.scalars())


async def add_invoice(session: AsyncSession, invoice: Invoice) -> str:
    """Stage an invoice and flush it so its id and uniqueness are settled."""
    session.add(invoice)
    await session.flush()
    return invoice.id


async def add_line_items(session: AsyncSession, rows: list[dict[str, Any]]) -> int:
    """Bulk insert line items. An empty list is a no-op."""
    if not rows:
        return 0
    await session.execute(insert(InvoiceItem), rows)
    return len(rows)


async def add_credit_note(session: AsyncSession, credit_note: CreditNote) -> str:
    session.add(credit_note)
    await session.flush()
    return credit_note.id


async def upsert_file_reference(
    session: AsyncSession,
    model: type[FileReferenceMixin],
    owner_id: str,
    kind: str,
    file_name: str,
    storage_path: str,
    public_url: str,
) -> None:
    """
    Record the primary-tier location of an artifact.

    Keyed on (owner, kind): a second call for the same kind overwrites the
    row instead of adding another.
    """
    now = datetime.now(timezone.utc)
    stmt = _upsert_statement(session, model).values(
        **{model.owner_key: owner_id},
        kind=kind,
        file_name=file_name,
        storage_path=storage_path,
        public_url=public_url,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[model.owner_key, "kind"],
        set_={
            "file_name": stmt.excluded.file_name,
            "storage_path": stmt.excluded.storage_path,
            "public_url": stmt.excluded.public_url,
            "updated_at": now,
        },
    )
    await session.execute(stmt)


async def set_backup_location(
    session: AsyncSession,
    model: type[FileReferenceMixin],
    owner_id: str,
    kind: str,
    backup_file_id: str,
    backup_url: str,
) -> bool:
    """
    Attach the backup-tier location to an existing file reference.

    Never inserts. Returns False when there is no row to update.
    """
    result = await session.execute(
        update(model)
        .where(getattr(model, model.owner_key) == owner_id, model.kind == kind)
        .values(backup_file_id=backup_file_id, backup_url=backup_url)
    )
    return result.rowcount > 0

"""
Entity resolution: issuers and projects.

The issuer is upserted by RFC inside the caller's write transaction. The
project is classified best-effort: a miss (or a failing lookup) leaves the
invoice without a project and flags it for review.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from facturaflow.domain.errors import EntityResolutionError
from facturaflow.domain.matching import ProjectCandidate, ProjectMatcher, SubstringProjectMatcher
from facturaflow.domain.submission import InvoiceSubmission
from facturaflow.infrastructure.repository import list_active_projects, upsert_issuer

logger = logging.getLogger(__name__)

PLACEHOLDER_EMAIL_DOMAIN = "pendiente.com"


def extract_code(value: str | None, max_length: int) -> str | None:
    """
    Reduce a SAT catalogue value to its bare code.

    Example:
        >>> extract_code("601 - General de Ley Personas Morales", 10)
        '601'
    """
    if not value:
        return None
    return value.split(" - ")[0].strip()[:max_length] or None


def issuer_values(submission: InvoiceSubmission) -> dict:
    """Column values for the issuer upsert."""
    issuer = submission.issuer
    rfc = issuer.rfc.strip().upper()
    return {
        "rfc": rfc,
        "fiscal_name": issuer.name.strip(),
        "fiscal_regime_code": issuer.regime[:3] if issuer.regime else None,
        "fiscal_zip_code": extract_code(issuer.zip_code, 5),
        "email": submission.contact.email or f"{rfc.lower()}@{PLACEHOLDER_EMAIL_DOMAIN}",
        "phone": submission.contact.phone or None,
        "status": "active",
    }


class EntityResolver:
    """Resolves the issuer and project a submission belongs to."""

    def __init__(self, matcher: ProjectMatcher | None = None) -> None:
        self.matcher = matcher or SubstringProjectMatcher()

    async def resolve_issuer(self, session: AsyncSession, submission: InvoiceSubmission) -> str:
        """
        Upsert the issuer by RFC and return its id.

        Raises:
            EntityResolutionError: If the upsert fails
        """
        values = issuer_values(submission)
        try:
            issuer_id = await upsert_issuer(session, values)
        except SQLAlchemyError as e:
            raise EntityResolutionError(f"Failed to upsert issuer {values['rfc']}: {e}") from e

        logger.info(f"Issuer {values['rfc']} resolved to {issuer_id}")
        return issuer_id

    async def classify_project(self, session: AsyncSession, label: str) -> ProjectCandidate | None:
        """Match the submitted project label against active projects. Never raises."""
        try:
            projects = await list_active_projects(session)
        except SQLAlchemyError as e:
            logger.warning(f"Project lookup failed for '{label}', flagging for review: {e}")
            return None

        candidates = [
            ProjectCandidate(id=p.id, code=p.code, name=p.name, sort_order=p.sort_order)
            for p in projects
        ]
        match = self.matcher.match(label, candidates)
        if match is None:
            logger.warning(f"No project matches '{label}'; invoice needs project review")
        else:
            logger.info(f"Project '{label}' classified as {match.code}")
        return match

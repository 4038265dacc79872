"""
Services package - Ingestion pipeline stages and their orchestrator.

Includes entity resolution, structured writes, both storage tiers and the
credit-note sub-pipeline.
"""

from .backup import SecondaryBackupPersister
from .credit_notes import CreditNoteSubpipeline
from .entities import EntityResolver
from .ingestion import InvoiceIngestionService
from .primary import PrimaryBlobPersister
from .writer import InvoiceWriter

__all__ = [
    "CreditNoteSubpipeline",
    "EntityResolver",
    "InvoiceIngestionService",
    "InvoiceWriter",
    "PrimaryBlobPersister",
    "SecondaryBackupPersister",
]

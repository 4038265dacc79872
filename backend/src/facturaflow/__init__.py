"""
FacturaFlow - tax-invoice ingestion service.

Receives CFDI submissions, stores the structured record and replicates the
XML/PDF artifacts across a primary blob store and a best-effort backup tier.
"""

__version__ = "1.4.0"

"""
Primary-tier persistence.

Uploads each artifact to the blob store and immediately records its location
in the file-reference table. Failures are per artifact: one failed upload
does not stop the others, and never fails the submission (the structured
rows are already committed).
"""

import logging

from facturaflow.domain.models import Artifact, FileKind, PersistedFile
from facturaflow.domain.paths import ArtifactLocation
from facturaflow.infrastructure.database import Database, FileReferenceMixin
from facturaflow.infrastructure.repository import upsert_file_reference
from facturaflow.infrastructure.storage import BlobStore

logger = logging.getLogger(__name__)


class PrimaryBlobPersister:
    """Writes artifacts to the primary blob store and references them."""

    def __init__(self, database: Database, store: BlobStore) -> None:
        self.database = database
        self.store = store

    async def persist(
        self,
        reference_model: type[FileReferenceMixin],
        owner_id: str,
        artifacts: list[Artifact],
        location: ArtifactLocation,
    ) -> dict[FileKind, PersistedFile]:
        """
        Store every artifact and upsert its file reference.

        Args:
            reference_model: FileReference (invoices) or CreditNoteFile
            owner_id: Id of the invoice or credit note owning the files
            artifacts: Decoded artifacts to store
            location: Week/project/issuer the artifacts belong to

        Returns:
            The artifacts that were both uploaded and referenced, by kind
        """
        persisted: dict[FileKind, PersistedFile] = {}

        for artifact in artifacts:
            path = location.storage_path(artifact.file_name)
            try:
                stored = await self.store.put(path, artifact.content, artifact.content_type)
                async with self.database.session() as session:
                    await upsert_file_reference(
                        session,
                        reference_model,
                        owner_id,
                        kind=artifact.kind.value,
                        file_name=artifact.file_name,
                        storage_path=stored.path,
                        public_url=stored.public_url,
                    )
                    await session.commit()
            except Exception as e:
                logger.exception(
                    f"Primary storage failed for {artifact.file_name} ({artifact.kind.value}): {e}"
                )
                continue

            persisted[artifact.kind] = PersistedFile(
                kind=artifact.kind,
                file_name=artifact.file_name,
                storage_path=stored.path,
                public_url=stored.public_url,
            )
            logger.info(f"Stored {artifact.file_name} at {stored.path} ({stored.size_bytes} bytes)")

        return persisted

"""
Secondary-tier (backup) persistence.

Copies artifacts into a browsable folder tree in the document store:

    Semana_07_2025/[Extemporaneas/]PROJECT/RFC_ISSUER_NAME/<files>

Folders are resolved find-then-create at each level. There is no lock, so
two concurrent submissions for the same week/project/issuer can both miss
the lookup and create sibling folders with the same name; that race is
accepted.

Everything here is best-effort. The primary tier already guarantees
durability, so any failure is logged and swallowed.
"""

import logging

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from facturaflow.domain.models import Artifact, BackupFile, BackupResult, FileKind, PersistedFile
from facturaflow.domain.paths import ArtifactLocation
from facturaflow.infrastructure.database import Database, FileReferenceMixin
from facturaflow.infrastructure.drive import DocumentStore
from facturaflow.infrastructure.repository import set_backup_location

logger = logging.getLogger(__name__)


class SecondaryBackupPersister:
    """
    Mirrors stored artifacts into the backup document store.

    A None store disables the tier entirely.
    """

    def __init__(
        self,
        database: Database,
        store: DocumentStore | None,
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
    ) -> None:
        self.database = database
        self.store = store
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait

    @property
    def enabled(self) -> bool:
        return self.store is not None

    async def _get_or_create_folder(self, name: str, parent_id: str) -> str:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            reraise=True,
        ):
            with attempt:
                folder_id = await self.store.find_folder(name, parent_id)
                if folder_id is None:
                    folder_id = await self.store.create_folder(name, parent_id)
                    logger.info(f"Created backup folder {name} ({folder_id})")
        return folder_id

    async def resolve_folder(self, location: ArtifactLocation) -> tuple[str, str]:
        """
        Walk the folder chain from the root, creating missing levels.

        Returns:
            (leaf folder id, slash-joined folder path)
        """
        parent_id = self.store.root_folder_id
        names = location.folder_chain()
        for name in names:
            parent_id = await self._get_or_create_folder(name, parent_id)
        return parent_id, "/".join(names)

    async def persist(
        self,
        reference_model: type[FileReferenceMixin],
        owner_id: str,
        artifacts: list[Artifact],
        location: ArtifactLocation,
        primary: dict[FileKind, PersistedFile],
    ) -> BackupResult | None:
        """
        Upload artifacts to the backup tier. Never raises.

        The backup location is written onto an existing file reference only
        when the primary upload for that kind succeeded; rows are never
        inserted from here.

        Returns:
            What reached the backup tier, or None if the tier is disabled or
            the folder could not be resolved
        """
        if self.store is None or not artifacts:
            return None

        try:
            return await self._persist(reference_model, owner_id, artifacts, location, primary)
        except Exception as e:
            logger.exception(f"Backup tier failed for owner {owner_id}: {e}")
            return None

    async def _persist(
        self,
        reference_model: type[FileReferenceMixin],
        owner_id: str,
        artifacts: list[Artifact],
        location: ArtifactLocation,
        primary: dict[FileKind, PersistedFile],
    ) -> BackupResult | None:
        try:
            folder_id, folder_path = await self.resolve_folder(location)
        except Exception as e:
            logger.warning(f"Backup folder resolution failed for owner {owner_id}: {e}")
            return None

        result = BackupResult(folder_id=folder_id, folder_path=folder_path)

        for artifact in artifacts:
            try:
                uploaded = await self.store.upload_file(
                    folder_id, artifact.file_name, artifact.content, artifact.content_type
                )
                await self.store.grant_public_read(uploaded.file_id)
            except Exception as e:
                logger.warning(f"Backup upload failed for {artifact.file_name}: {e}")
                continue

            result.files[artifact.kind] = BackupFile(
                kind=artifact.kind,
                file_id=uploaded.file_id,
                web_view_link=uploaded.web_view_link,
            )
            logger.info(f"Backed up {artifact.file_name} to {folder_path}")

            if artifact.kind not in primary:
                logger.warning(
                    f"No primary reference for {artifact.file_name}; backup location not recorded"
                )
                continue

            try:
                async with self.database.session() as session:
                    updated = await set_backup_location(
                        session,
                        reference_model,
                        owner_id,
                        artifact.kind.value,
                        backup_file_id=uploaded.file_id,
                        backup_url=uploaded.web_view_link,
                    )
                    await session.commit()
            except Exception as e:
                logger.warning(f"Failed to record backup location for {artifact.file_name}: {e}")
                continue

            if not updated:
                logger.warning(f"File reference for {artifact.file_name} vanished before backup update")

        return result

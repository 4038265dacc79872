"""
Naming rules for stored artifacts.

Both storage tiers organise files by week, project and issuer so that a
person browsing either one finds the same layout:

    primary:  2025/S07/AMAZON_NORTE/XAXX010101000/<uuid>.xml
    backup:   Semana_07_2025/AMAZON_NORTE/XAXX010101000_Juan_Perez/<uuid>.xml
"""

import re
from dataclasses import dataclass

from .models import FileKind

# Subfolder for invoices accepted outside their upload window
LATE_FOLDER_NAME = "Extemporaneas"

CREDIT_NOTE_SUFFIX = "_NC"

_UNSAFE_PATH_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_UNSAFE_FOLDER_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")


def artifact_file_name(uuid: str, kind: FileKind) -> str:
    """File name for an artifact; credit-note files carry an _NC suffix."""
    suffix = CREDIT_NOTE_SUFFIX if kind in (FileKind.CREDIT_NOTE_XML, FileKind.CREDIT_NOTE_PDF) else ""
    return f"{uuid}{suffix}.{kind.extension}"


def _path_segment(value: str) -> str:
    return _UNSAFE_PATH_CHARS.sub("_", value.strip()).upper()


def build_storage_path(
    year: int,
    week: int,
    project: str,
    issuer_rfc: str,
    file_name: str,
) -> str:
    """
    Deterministic primary-tier object path.
    
    The same inputs always produce the same path, so re-uploading an
    artifact overwrites it instead of creating a copy.
    """
    return f"{year}/S{week:02d}/{_path_segment(project)}/{_path_segment(issuer_rfc)}/{file_name}"


def sanitize_folder_name(name: str) -> str:
    """Strip path-unsafe characters and turn whitespace runs into underscores."""
    cleaned = _UNSAFE_FOLDER_CHARS.sub("", name).strip()
    return _WHITESPACE.sub("_", cleaned)


def week_folder_name(week: int, year: int) -> str:
    return f"Semana_{week:02d}_{year}"


def project_folder_name(project: str) -> str:
    return sanitize_folder_name(project.upper())


def issuer_folder_name(issuer_rfc: str, issuer_name: str) -> str:
    return f"{sanitize_folder_name(issuer_rfc.upper())}_{sanitize_folder_name(issuer_name)}"


def backup_folder_chain(
    week: int,
    year: int,
    project: str,
    issuer_rfc: str,
    issuer_name: str,
    is_late: bool = False,
) -> list[str]:
    """Folder names from the root down to the leaf that holds the files."""
    chain = [week_folder_name(week, year)]
    if is_late:
        chain.append(LATE_FOLDER_NAME)
    chain.append(project_folder_name(project))
    chain.append(issuer_folder_name(issuer_rfc, issuer_name))
    return chain


@dataclass(frozen=True)
class ArtifactLocation:
    """Where a document's artifacts go on both tiers."""
    year: int
    week: int
    project: str
    issuer_rfc: str
    issuer_name: str
    is_late: bool = False
    
    def storage_path(self, file_name: str) -> str:
        return build_storage_path(self.year, self.week, self.project, self.issuer_rfc, file_name)
    
    def folder_chain(self) -> list[str]:
        return backup_folder_chain(
            self.week,
            self.year,
            self.project,
            self.issuer_rfc,
            self.issuer_name,
            is_late=self.is_late,
        )

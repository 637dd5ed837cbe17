"""Artifact integrity checks.

``verify_backup`` answers one question: are the bytes on disk the bytes
that were written?  It compares size and SHA-256 against the catalog entry
and has no side effects.  ``validate_artifact`` additionally inspects the
artifact structure and returns a report for display.

Usage:
    from crm_backup.backup.verifier import compute_checksum, verify_backup

    if not verify_backup(path, metadata):
        raise CorruptionError("checksum mismatch", backup_id=metadata.id)
"""

import hashlib
import hmac
import logging
from pathlib import Path

from crm_backup.backup.codec import ArtifactFormatError, parse_artifact
from crm_backup.backup.models import BackupMetadata
from crm_backup.errors import BackupIOError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


def compute_checksum(path: str | Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def verify_backup(path: str | Path, metadata: BackupMetadata) -> bool:
    """Check that the artifact at ``path`` matches its catalog entry.

    Returns:
        False if the file is missing, its size differs, or its checksum
        differs.  True otherwise.

    Raises:
        BackupIOError: If the artifact exists but cannot be read.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
        if size != metadata.size:
            logger.warning(
                "Backup %s: size mismatch (expected %d bytes, found %d)",
                metadata.id, metadata.size, size,
            )
            return False
        actual = compute_checksum(path)
    except FileNotFoundError:
        logger.warning("Backup %s: artifact %s is missing", metadata.id, path)
        return False
    except OSError as e:
        raise BackupIOError(
            f"Failed to read artifact {path}: {e}", backup_id=metadata.id
        ) from e

    if not hmac.compare_digest(actual, metadata.checksum):
        logger.warning("Backup %s: checksum mismatch", metadata.id)
        return False

    return True


def validate_artifact(path: str | Path, metadata: BackupMetadata | None = None) -> dict:
    """Validate an artifact's integrity and structure.

    Args:
        path: Path to the artifact file.
        metadata: Catalog entry to check size and checksum against.  When
            omitted only the structure is checked.

    Returns:
        Dict with ``valid`` (bool), ``errors`` (list), ``warnings`` (list).

    Example:
        result = validate_artifact("backups/backup_x.sql", metadata)
        if not result["valid"]:
            print(result["errors"])
    """
    result: dict = {"valid": True, "errors": [], "warnings": []}
    path = Path(path)

    if not path.exists():
        result["valid"] = False
        result["errors"].append(f"Artifact not found: {path}")
        return result

    try:
        if metadata is not None and not verify_backup(path, metadata):
            result["valid"] = False
            result["errors"].append("Size or checksum does not match the catalog entry")
            return result
        text = path.read_text(encoding="utf-8")
    except (BackupIOError, OSError) as e:
        result["valid"] = False
        result["errors"].append(f"Artifact could not be read: {e}")
        return result
    except UnicodeDecodeError as e:
        result["valid"] = False
        result["errors"].append(f"Malformed artifact: {e}")
        return result

    try:
        artifact = parse_artifact(text)
    except ArtifactFormatError as e:
        result["valid"] = False
        result["errors"].append(f"Malformed artifact: {e}")
        return result

    if not artifact.complete:
        result["valid"] = False
        result["errors"].append("Artifact is truncated (no end marker)")

    if artifact.tables != artifact.header_tables:
        result["valid"] = False
        result["errors"].append(
            f"Header lists tables {artifact.header_tables} "
            f"but sections are {artifact.tables}"
        )

    if metadata is not None:
        if artifact.tables != metadata.tables:
            result["valid"] = False
            result["errors"].append(
                f"Catalog lists tables {metadata.tables} but artifact has {artifact.tables}"
            )
        header_id = artifact.header.get("backup_id")
        if header_id != metadata.id:
            result["warnings"].append(
                f"Artifact header id '{header_id}' differs from catalog id '{metadata.id}'"
            )

    for section in artifact.sections:
        if not section.statements:
            result["warnings"].append(f"Table '{section.table}' has no statements")

    return result

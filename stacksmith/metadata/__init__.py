"""Metadata storage and retrieval.

Metadata lives in ``<git-dir>/stacksmith/metadata.yml`` so it is never part of
the working tree. Loads always check the version (migrating older layouts)
and cross-check branch entries against live refs; saves require the write
lock.
"""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

import yaml
from pydantic import ValidationError

from ..errors import (
    CorruptedMetadataError, MetadataError, NotInitializedError, OperationInProgressError,
    UnsupportedMetadataVersionError,
)
from ..util import utc_now_iso
from .models import METADATA_VERSION, BranchMetadata, RepositoryMetadata

logger = logging.getLogger(__name__)

METADATA_DIRNAME = "stacksmith"
METADATA_FILENAME = "metadata.yml"
LOCK_FILENAME = "metadata.lock"

__all__ = [
    "BranchMetadata", "RepositoryMetadata", "MetadataStore", "METADATA_VERSION",
    "metadata_dir", "migrate",
]


def metadata_dir(git_dir: Path) -> Path:
    return git_dir / METADATA_DIRNAME


def _migrate_v0(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Version 0 kept reviews under ``reviews`` and the provider cache nested."""
    migrated: Dict[str, Any] = {
        "version": "1",
        "provider": doc.get("provider"),
        "base_branch": doc.get("base_branch"),
        "branches": dict(doc.get("branches") or {}),
    }
    now = utc_now_iso()
    for name, entry in (doc.get("reviews") or {}).items():
        entry = entry or {}
        review_id = entry.get("id", entry.get("review_id"))
        migrated["branches"][name] = {
            "review_id": str(review_id) if review_id is not None else None,
            "review_url": entry.get("url", entry.get("review_url")),
            "parent": entry.get("parent") or doc.get("base_branch"),
            "created_at": entry.get("created_at") or now,
        }
    cache = doc.get("provider_cache") or {}
    for key in ("base_url", "project_path", "auth_token"):
        value = cache.get(key, doc.get(key))
        if value is not None:
            migrated[key] = value
    return migrated


# Each step takes a raw document of its version and returns the next version's
MIGRATIONS = {
    "0": _migrate_v0,
}


def migrate(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Bring a raw metadata document up to the current version."""
    version = str(doc.get("version", "0"))
    while version != METADATA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise UnsupportedMetadataVersionError(version, METADATA_VERSION)
        logger.info(f"Migrating metadata from version {version}")
        doc = step(doc)
        version = str(doc.get("version"))
    return doc


class MetadataStore:
    """Loads, validates and saves RepositoryMetadata for one repository."""

    def __init__(self, git_dir: Path):
        self.git_dir = Path(git_dir)
        self.dir = metadata_dir(self.git_dir)
        self.path = self.dir / METADATA_FILENAME
        self.lock_path = self.dir / LOCK_FILENAME
        self._locked = False

    def exists(self) -> bool:
        return self.path.exists()

    @property
    def locked(self) -> bool:
        """Whether this store currently holds the write lock."""
        return self._locked

    def load(self, live_branches: Optional[Iterable[str]] = None) -> RepositoryMetadata:
        """Load metadata, migrating old versions.

        When live_branches is given, entries for branches missing from it are
        flagged stale (kept, not deleted).
        """
        if not self.path.exists():
            raise NotInitializedError(self.path)
        try:
            with open(self.path, "r") as f:
                doc = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise CorruptedMetadataError(self.path, str(e)) from e
        if not isinstance(doc, dict):
            raise CorruptedMetadataError(self.path, "expected a mapping at the top level")

        migrated = str(doc.get("version", "0")) != METADATA_VERSION
        doc = migrate(doc)
        try:
            metadata = RepositoryMetadata.model_validate(doc)
        except ValidationError as e:
            raise CorruptedMetadataError(self.path, str(e)) from e

        if live_branches is not None:
            self.flag_stale(metadata, live_branches)
        if migrated and self._locked:
            self.save(metadata)
        return metadata

    @staticmethod
    def flag_stale(metadata: RepositoryMetadata, live_branches: Iterable[str]) -> None:
        live = set(live_branches)
        for name, entry in metadata.branches.items():
            entry.stale = name not in live
            if entry.stale:
                logger.warning(f"Metadata references branch '{name}' which no longer exists locally")

    def save(self, metadata: RepositoryMetadata) -> None:
        """Write the document atomically. Requires the write lock."""
        if not self._locked:
            raise MetadataError(f"Refusing to write {self.path} without holding {self.lock_path}")
        self.dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".yml.tmp")
        with open(tmp_path, "w") as f:
            yaml.safe_dump(metadata.to_document(), f, sort_keys=False)
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved metadata to {self.path}")

    @contextmanager
    def lock(self) -> Iterator["MetadataStore"]:
        """Hold the exclusive write lock; fails fast if someone else has it."""
        self.dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder: Optional[str] = None
            try:
                holder = self.lock_path.read_text().strip() or None
            except OSError:
                pass
            raise OperationInProgressError(self.lock_path, holder)
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        self._locked = True
        try:
            yield self
        finally:
            self._locked = False
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                logger.warning(f"Lock file {self.lock_path} vanished while held")

"""Pydantic models for the persisted metadata document."""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..util import utc_now_iso

# Current metadata version
METADATA_VERSION = "1"


class BranchMetadata(BaseModel):
    """Review linkage recorded for one branch."""
    model_config = ConfigDict(extra="ignore")

    review_id: Optional[str] = None
    review_url: Optional[str] = None
    parent: str
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None
    # Set on load when the branch no longer exists locally; never written out
    stale: bool = Field(default=False, exclude=True)

    def set_review(self, review_id: str, review_url: str) -> None:
        """Record the review and mark the entry updated."""
        self.review_id = review_id
        self.review_url = review_url
        self.touch()

    def touch(self) -> None:
        self.updated_at = utc_now_iso()


class RepositoryMetadata(BaseModel):
    """Root document: provider selection, branch linkage and provider cache."""
    model_config = ConfigDict(extra="ignore")

    version: str = METADATA_VERSION
    provider: str
    base_branch: str
    branches: Dict[str, BranchMetadata] = Field(default_factory=dict)
    base_url: Optional[str] = None
    project_path: Optional[str] = None
    auth_token: Optional[str] = None

    def get_branch(self, name: str) -> Optional[BranchMetadata]:
        return self.branches.get(name)

    def set_branch(self, name: str, meta: BranchMetadata) -> None:
        self.branches[name] = meta

    def has_branch(self, name: str) -> bool:
        return name in self.branches

    @property
    def stale_branches(self) -> Dict[str, BranchMetadata]:
        return {name: meta for name, meta in self.branches.items() if meta.stale}

    def to_document(self) -> Dict[str, object]:
        """Plain dict in persisted layout, ready for YAML."""
        return self.model_dump(mode="json", exclude_none=True)

"""Configuration for pytest."""

import logging
from pathlib import Path

import pytest

from stacksmith.metadata import MetadataStore, RepositoryMetadata
from stacksmith.tests.helpers import FakeProvider, RepoContext, create_repo_context

logger = logging.getLogger(__name__)


@pytest.fixture
def repo_ctx(tmp_path: Path) -> RepoContext:
    """Fresh repository on main with a bare origin."""
    return create_repo_context(tmp_path)


@pytest.fixture
def fake_provider() -> FakeProvider:
    provider = FakeProvider()
    provider.authenticate("good-token", source="test")
    return provider


@pytest.fixture
def store(repo_ctx: RepoContext) -> MetadataStore:
    """Initialized metadata store for repo_ctx."""
    store = MetadataStore(repo_ctx.git_dir)
    with store.lock():
        store.save(RepositoryMetadata(provider="gitlab", base_branch="main",
                                      base_url="https://gitlab.example.com",
                                      project_path="group/project"))
    return store

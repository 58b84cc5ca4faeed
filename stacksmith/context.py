"""Per-invocation engine context."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .config.config_parser import parse_remote_url
from .config.models import StacksmithConfig
from .errors import ProviderDetectionFailedError
from .git import get_git_dir, get_remote_url
from .metadata import MetadataStore, RepositoryMetadata
from .providers import ProviderType, ReviewProvider, create_provider
from .typing import GitInterface

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Everything one command invocation shares.

    Replaces any process-wide state: the provider client (and the credential
    it verified) lives here for one invocation and is persisted only through
    the metadata store.
    """
    config: StacksmithConfig
    git_cmd: GitInterface
    store: MetadataStore
    cancel_event: threading.Event = field(default_factory=threading.Event)
    interactive: bool = False
    provider: Optional[ReviewProvider] = None

    @classmethod
    def for_repo(cls, config: StacksmithConfig, git_cmd: GitInterface,
                 interactive: bool = False) -> "EngineContext":
        store = MetadataStore(get_git_dir(git_cmd))
        return cls(config=config, git_cmd=git_cmd, store=store, interactive=interactive)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def remote(self) -> str:
        return self.config.repo.remote

    def base_branch(self, metadata: RepositoryMetadata) -> str:
        return self.config.repo.base_branch or metadata.base_branch

    def provider_for(self, metadata: RepositoryMetadata) -> ReviewProvider:
        """Provider client for this repository, created once per invocation."""
        if self.provider is None:
            provider_type = ProviderType.from_str(self.config.repo.provider or metadata.provider)
            base_url = metadata.base_url
            project_path = metadata.project_path
            if not base_url or not project_path:
                url = get_remote_url(self.git_cmd, self.remote)
                try:
                    remote = parse_remote_url(url)
                except ValueError:
                    raise ProviderDetectionFailedError(url)
                base_url = base_url or remote.base_url
                project_path = project_path or remote.project_path
            self.provider = create_provider(provider_type, base_url, project_path,
                                            self.config.repo.required_scope)
            logger.debug(f"Using {provider_type.display_name} at {base_url} for {project_path}")
        return self.provider

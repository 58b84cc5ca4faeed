"""Config module."""

from typing import Dict, Any
from .models import RepoConfig, UserConfig, StacksmithConfig, ToolConfig

class Config(StacksmithConfig):
    """Config object holding repository, user and tool config."""
    def __init__(self, config: Dict[str, Dict[str, Any]]):
        """Initialize with parsed config dict."""
        super().__init__(
            repo=RepoConfig.model_validate(config.get('repo', {})),
            user=UserConfig.model_validate(config.get('user', {})),
            tool=ToolConfig.model_validate(config.get('tool', {})),
        )

def default_config() -> Config:
    """Get default config without parsing git."""
    return Config({
        'repo': {
            'remote': 'origin',
        },
        'user': {},
        'tool': {},
    })

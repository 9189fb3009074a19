"""Session options: models and loaders."""

from duplex.config.models import AgentOptions, HookMatcher
from duplex.config.parser import ConfigError, load_options, load_options_file

__all__ = [
    "AgentOptions",
    "ConfigError",
    "HookMatcher",
    "load_options",
    "load_options_file",
]

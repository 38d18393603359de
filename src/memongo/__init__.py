"""Ephemeral MongoDB servers for tests."""

from memongo.config import Options
from memongo.readiness import StartupError, StartupFailure
from memongo.server import Server, random_database, start, start_with_options

__version__ = "0.1.0"
__all__ = [
    "Options",
    "Server",
    "StartupError",
    "StartupFailure",
    "__version__",
    "random_database",
    "start",
    "start_with_options",
]

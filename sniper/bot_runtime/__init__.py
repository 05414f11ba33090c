from .logging import setup_logger
from .settings import AppSettings, ConfigurationError
from .supervisor import RecoverySupervisor, bootstrap_dependencies

__all__ = [
    "AppSettings",
    "ConfigurationError",
    "RecoverySupervisor",
    "bootstrap_dependencies",
    "setup_logger",
]

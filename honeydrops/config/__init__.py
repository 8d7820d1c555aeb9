from .logging import configure_logging
from .settings import HoneySettings, get_settings

__all__ = ["HoneySettings", "configure_logging", "get_settings"]

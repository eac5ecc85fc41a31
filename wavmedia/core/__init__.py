from wavmedia.core.config import Settings, settings
from wavmedia.core.db import create_engine, create_session_factory

__all__ = ["Settings", "settings", "create_engine", "create_session_factory"]

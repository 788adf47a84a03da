"""FastAPI application package for the Guardião LGPD API."""

from .config import settings
from .logging import setup_logging

setup_logging(level=settings.log_level)

__all__ = ["setup_logging"]

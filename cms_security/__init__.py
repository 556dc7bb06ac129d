"""
Request security pipeline for the blog CMS.

Rate limiting, WAF pattern rules, input sanitization and security event
logging applied in front of the CMS business routers.
"""

from .app import create_app
from .config import Settings, get_settings
from .services import SecurityServices

__version__ = "0.1.0"

__all__ = ["create_app", "Settings", "get_settings", "SecurityServices"]

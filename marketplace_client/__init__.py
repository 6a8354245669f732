"""
Agent Marketplace Client
"""

__version__ = "1.0.0"
__author__ = "Agent Marketplace Team"

# Application metadata
APP_NAME = "Agent Marketplace Client"
APP_DESCRIPTION = "Headless session and chat client for the AI agent marketplace API"

# Import key components for easier access
from .config import settings, get_settings
from .main import ClientContext, setup_logging

__all__ = [
    "ClientContext",
    "setup_logging",
    "settings",
    "get_settings",
    "APP_NAME",
    "APP_DESCRIPTION",
    "__version__",
]

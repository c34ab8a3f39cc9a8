"""
Infrastructure module - configuration, logging and webhook notifications.
"""

from .config import Settings
from .logging_config import setup_logging
from .webhook import WebhookNotifier, send_webhook_sync

__all__ = [
    "Settings",
    "setup_logging",
    "WebhookNotifier",
    "send_webhook_sync",
]

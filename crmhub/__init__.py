"""
🚀 crmhub Package Init
----------------------
KeyCRM campaign expiration engine: snapshot collection, expiry evaluation
and the cron/admin HTTP surface.
"""

from .config import settings

__all__ = ["settings"]

"""
Monitoring Layer - operator alerting.

This module provides:
    - AlertManager: Telegram notifications with deduplication

Alert Deduplication:
    - Same alert won't fire repeatedly within cooldown window
    - Different alert types are tracked separately
"""

from .alerting import AlertManager

__all__ = [
    "AlertManager",
]

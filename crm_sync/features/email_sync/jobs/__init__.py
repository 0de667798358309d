"""
Job runners for the Gmail ingestion feature.
"""

from .gmail_sync_job import start_gmail_sync_scheduler

__all__ = ["start_gmail_sync_scheduler"]

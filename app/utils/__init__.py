"""Utility functions"""
from .background import BackgroundTaskSet
from .file_cleanup import delete_dir_safely
from .retry import best_effort_retry

__all__ = [
    "BackgroundTaskSet",
    "delete_dir_safely",
    "best_effort_retry",
]

"""User-friendly APIs for the Yield Reallocator.

Components:
- ReallocationAPI: positions, manual triggers, history and statistics
"""

from src.api.reallocation_api import ReallocationAPI

__all__ = [
    "ReallocationAPI",
]

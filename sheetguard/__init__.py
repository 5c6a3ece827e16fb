"""
sheetguard - mutation safety and resilience for a remote spreadsheet service.
"""

from sheetguard.service import MutationService
from sheetguard.settings import Settings

__all__ = ["MutationService", "Settings"]

"""Upstream affiliate network fetchers."""

from __future__ import annotations

from .addrevenue import AddRevenueFetcher, AddRevenueSnapshot
from .awin import AwinFetcher, ProgrammeInfo

__all__ = ["AddRevenueFetcher", "AddRevenueSnapshot", "AwinFetcher", "ProgrammeInfo"]

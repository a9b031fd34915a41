"""Standalone scheduled jobs (not attached to a domain)."""

from .daily_refresh import DailyRefreshJob, RefreshReport, register_daily_refresh

__all__ = [
    "DailyRefreshJob",
    "RefreshReport",
    "register_daily_refresh",
]

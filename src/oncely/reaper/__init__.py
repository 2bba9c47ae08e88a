"""Oncely reaper: background sweeps of expired leases and records."""

from oncely.reaper.worker import LeaseReaper, ReapReport, start_reaper, stop_reaper

__all__ = ["LeaseReaper", "ReapReport", "start_reaper", "stop_reaper"]

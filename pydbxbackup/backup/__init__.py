"""Backup engine and its building blocks."""

from .downloader import DownloadExecutor, download_to_path
from .engine import BackupEngine, call_with_refresh_retry
from .exclude import ExclusionFilter, ExclusionRule, RuleKind, should_exclude
from .orphans import OrphanReconciler
from .planner import BackupAction, BackupDecision, local_path_for, plan, should_skip
from .stats import BackupStats, StatsSnapshot

__all__ = [
    "BackupAction",
    "BackupDecision",
    "BackupEngine",
    "BackupStats",
    "DownloadExecutor",
    "ExclusionFilter",
    "ExclusionRule",
    "OrphanReconciler",
    "RuleKind",
    "StatsSnapshot",
    "call_with_refresh_retry",
    "download_to_path",
    "local_path_for",
    "plan",
    "should_exclude",
    "should_skip",
]

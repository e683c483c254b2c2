"""Helpers for the process supervisor."""

from .backoff import DelayCalculator, RestartBackoff
from .output_capture import follow, open_service_log, service_log_path, tail_lines, truncate_logs
from .pid_files import PidRecord, PidRecordStore, clear_stale_pid_file
from .process_terminator import (
    TerminationReport,
    collect_descendants,
    signal_group,
    terminate_process_tree,
    wait_for_foreign_pid,
)

__all__ = [
    "DelayCalculator",
    "PidRecord",
    "PidRecordStore",
    "RestartBackoff",
    "TerminationReport",
    "clear_stale_pid_file",
    "collect_descendants",
    "follow",
    "open_service_log",
    "service_log_path",
    "signal_group",
    "tail_lines",
    "terminate_process_tree",
    "truncate_logs",
    "wait_for_foreign_pid",
]

"""
Persistent state for the archive backend.

Two line-delimited JSON logs live under the data directory: ``records.jsonl``
(what should be archived) and ``quota.jsonl`` (per-visitor recovery quota).
"""

from store.jsonl import JsonlFile
from store.quota import DEFAULT_FREE_QUOTA, HistoryEntry, QuotaLedger, VisitorQuota
from store.records import Record, RecordStore, build_backup_path

__all__ = [
    "DEFAULT_FREE_QUOTA",
    "HistoryEntry",
    "JsonlFile",
    "QuotaLedger",
    "Record",
    "RecordStore",
    "VisitorQuota",
    "build_backup_path",
]

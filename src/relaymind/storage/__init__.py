"""
Storage for RelayMind.

The core only talks to these interfaces:
- HistoryStore: per-agent conversation windows (load/save/clear)
- CheckpointStore: write-once archives of compacted messages
- TaskStateStore: plain-text "active task" snapshots written before compaction
"""

from relaymind.storage.checkpoints import Checkpoint, CheckpointStore
from relaymind.storage.history import HistoryStore, InMemoryHistoryStore, JsonHistoryStore
from relaymind.storage.task_state import TaskStateStore

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "HistoryStore",
    "InMemoryHistoryStore",
    "JsonHistoryStore",
    "TaskStateStore",
]

from __future__ import annotations

from enum import Enum


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({SyncStatus.COMPLETED.value, SyncStatus.FAILED.value})
ACTIVE_STATUSES = frozenset({SyncStatus.PENDING.value, SyncStatus.IN_PROGRESS.value})


class StageName(str, Enum):
    USERS = "users"
    TOKENS = "tokens"
    RELATIONS = "relations"
    CATEGORIZE = "categorize"


# Progress bands per stage; each stage only writes values inside its band.
PROGRESS_START = 5
USERS_FETCH = 15
USERS_PROCESS = 20
USERS_DONE = 40
TOKENS_FETCH = 40
TOKENS_PROCESS = 50
TOKENS_SAVE = 70
TOKENS_DONE = 75
RELATIONS_START = 80
RELATIONS_SAVE = 90
RELATIONS_DONE = 95
FINALIZE = 95
COMPLETE = 100

DEFAULT_MANAGEMENT_STATUS = "Newly discovered"
UNKNOWN_CATEGORY = "Unknown"
UNCATEGORIZED_VALUES = frozenset({"", "unknown", "uncategorized", "others"})
UNKNOWN_APP_NAME = "Unknown App"

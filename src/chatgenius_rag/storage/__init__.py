"""
Storage Module

This module provides:
- SQLite database for checkpoints, job status and alerts
- Read-only connectors over the chat message store (SQLite or Slack)
- The embedding sync tracker that decides what still needs embedding

Usage:
------
```python
from chatgenius_rag.storage import Database, SQLiteMessageSource, SyncTracker

db = Database("./data/rag.db")
db.init()

tracker = SyncTracker(db, SQLiteMessageSource("./data/messages.db"))
pending = await tracker.list_pending(limit=100)
```
"""

from .database import Database, Alert, SCHEMA

from .message_source import (
    MessageSource,
    SQLiteMessageSource,
    SlackMessageSource,
    MESSAGE_STORE_SCHEMA,
    parse_timestamp,
    slack_ts_to_datetime,
)

from .sync_tracker import SyncTracker

__all__ = [
    # Database
    "Database",
    "Alert",
    "SCHEMA",
    # Message sources
    "MessageSource",
    "SQLiteMessageSource",
    "SlackMessageSource",
    "MESSAGE_STORE_SCHEMA",
    "parse_timestamp",
    "slack_ts_to_datetime",
    # Tracker
    "SyncTracker",
]

"""
Best-effort JSON backup of the message cache.

Each save writes ``<backup_dir>/sync_<YYYY-MM-DD>/all_messages.json`` plus a
``conversations.json`` grouping; the newest folder is used for warm starts.
"""

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from wadash import aggregator
from wadash.schemas import Message

logger = logging.getLogger(__name__)

MESSAGES_FILE = "all_messages.json"
CONVERSATIONS_FILE = "conversations.json"


class BackupStore:
    def __init__(self, backup_dir: str, enabled: bool = True):
        self.backup_dir = Path(backup_dir)
        self.enabled = enabled

    def _dump(self, messages: Iterable[Message]) -> list[dict]:
        return [m.model_dump(mode="json", by_alias=True) for m in messages]

    def save(self, messages: list[Message]) -> Optional[Path]:
        """
        Write the messages and their per-contact grouping to today's folder.

        Errors are logged, never raised: the backup must not interfere with
        serving the cache.
        """
        if not self.enabled:
            return None
        folder = self.backup_dir / f"sync_{datetime.now(timezone.utc):%Y-%m-%d}"
        try:
            folder.mkdir(parents=True, exist_ok=True)

            with open(folder / MESSAGES_FILE, "w", encoding="utf-8") as f:
                json.dump(self._dump(messages), f, indent=2)

            conversations = {
                number: {"messages": self._dump(conv.sorted_messages())}
                for number, conv in aggregator.rebuild({m.sid: m for m in messages}).items()
            }
            with open(folder / CONVERSATIONS_FILE, "w", encoding="utf-8") as f:
                json.dump(conversations, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to write backup to {folder}: {e}")
            return None

        logger.info(f"Backup saved: {len(messages)} messages in {folder}")
        return folder

    def latest_folder(self) -> Optional[Path]:
        if not self.backup_dir.is_dir():
            return None
        folders = sorted(
            (p for p in self.backup_dir.iterdir() if p.is_dir() and (p / MESSAGES_FILE).exists()),
            reverse=True,
        )
        return folders[0] if folders else None

    def load_latest(self) -> Optional[list[Message]]:
        """Read the newest backup. Returns None if there is none or it is unreadable."""
        if not self.enabled:
            return None
        folder = self.latest_folder()
        if folder is None:
            return None
        path = folder / MESSAGES_FILE
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
            messages = [Message.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Failed to load backup {path}: {e}")
            return None
        logger.info(f"Loaded {len(messages)} messages from backup {path}")
        return messages

    def clear(self) -> None:
        """Delete every backup folder."""
        if self.backup_dir.is_dir():
            shutil.rmtree(self.backup_dir)
            logger.info(f"Backup directory removed: {self.backup_dir}")

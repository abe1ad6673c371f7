"""
Tests for the JSON backup store.
"""

import json

from wadash.backup import CONVERSATIONS_FILE, MESSAGES_FILE, BackupStore


class TestBackupStore:
    """Test save, load and clear."""

    def test_save_writes_messages_and_groupings(self, tmp_path, make_message):
        store = BackupStore(str(tmp_path))
        messages = [
            make_message("m1", "+1", direction="outbound-api", seconds=10),
            make_message("m2", "+1", direction="inbound", seconds=5),
            make_message("m3", "+2", seconds=1),
        ]

        folder = store.save(messages)

        assert folder.name.startswith("sync_")
        saved = json.loads((folder / MESSAGES_FILE).read_text())
        assert {m["sid"] for m in saved} == {"m1", "m2", "m3"}
        assert saved[0]["from"] == messages[0].from_
        grouped = json.loads((folder / CONVERSATIONS_FILE).read_text())
        assert [m["sid"] for m in grouped["+1"]["messages"]] == ["m2", "m1"]

    def test_load_latest_round_trip(self, tmp_path, make_message):
        store = BackupStore(str(tmp_path))
        original = make_message("m1", "+1", seconds=10, body="kept")
        store.save([original])

        [loaded] = store.load_latest()

        assert loaded == original

    def test_latest_folder_picks_newest(self, tmp_path):
        for name in ("sync_2025-01-01", "sync_2025-03-01", "sync_2025-02-01"):
            (tmp_path / name).mkdir()
            (tmp_path / name / MESSAGES_FILE).write_text("[]")
        (tmp_path / "sync_2025-04-01").mkdir()

        assert BackupStore(str(tmp_path)).latest_folder().name == "sync_2025-03-01"

    def test_missing_or_corrupt_backup(self, tmp_path):
        assert BackupStore(str(tmp_path / "absent")).load_latest() is None

        folder = tmp_path / "sync_2025-01-01"
        folder.mkdir()
        (folder / MESSAGES_FILE).write_text("{not json")

        assert BackupStore(str(tmp_path)).load_latest() is None

    def test_disabled_store(self, tmp_path, make_message):
        store = BackupStore(str(tmp_path / "off"), enabled=False)

        assert store.save([make_message("m1", "+1", seconds=1)]) is None
        assert not (tmp_path / "off").exists()

    def test_clear(self, tmp_path, make_message):
        store = BackupStore(str(tmp_path / "backups"))
        store.save([make_message("m1", "+1", seconds=1)])

        store.clear()

        assert store.latest_folder() is None
        store.clear()

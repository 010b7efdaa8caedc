import importlib
import json
import os
import sys
import tempfile
import time
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

ENV_KEYS = [
    "IMGHOST_STORAGE_ROOT",
    "IMGHOST_DATA_DIR",
    "IMGHOST_UPLOADS_DIR",
    "IMGHOST_LOGS_DIR",
]


def _purge_modules():
    for name in list(sys.modules):
        if name == "imghost" or name.startswith("imghost."):
            del sys.modules[name]


class StorageTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["IMGHOST_STORAGE_ROOT"] = str(root)
        os.environ["IMGHOST_DATA_DIR"] = str(root / "data")
        os.environ["IMGHOST_UPLOADS_DIR"] = str(root / "uploads")
        os.environ["IMGHOST_LOGS_DIR"] = str(root / "logs")
        _purge_modules()
        self.storage = importlib.import_module("imghost.storage")

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        _purge_modules()

    def test_directories_follow_environment(self):
        root = Path(self.storage_dir.name).resolve()
        self.assertEqual(self.storage.DATA_DIR, root / "data")
        self.assertEqual(self.storage.ANONYMOUS_DIR, root / "uploads" / "public")
        self.assertTrue(self.storage.USERS_DIR.is_dir())
        self.assertTrue(self.storage.INCOMING_DIR.is_dir())
        self.assertTrue(self.storage.DB_PATH.exists())

    def test_invalid_config_values_fall_back_to_defaults(self):
        self.storage.CONFIG_PATH.write_text(
            json.dumps(
                {
                    "subdomain_mode": "sometimes",
                    "max_upload_size_mb": "NaN",
                    "anonymous_hourly_limit": -4,
                    "rate_limit_fail_open": "no",
                }
            ),
            encoding="utf-8",
        )

        config = self.storage.get_config(refresh=True)

        self.assertEqual(config["subdomain_mode"], "enabled")
        self.assertEqual(config["max_upload_size_mb"], 30.0)
        self.assertEqual(config["anonymous_hourly_limit"], 10.0)
        self.assertFalse(config["rate_limit_fail_open"])

    def test_update_config_persists_changes(self):
        self.storage.update_config({"subdomain_mode": "disabled"})

        on_disk = json.loads(self.storage.CONFIG_PATH.read_text(encoding="utf-8"))
        self.assertEqual(on_disk["subdomain_mode"], "disabled")
        self.assertEqual(self.storage.get_config()["subdomain_mode"], "disabled")
        self.assertEqual(self.storage.config_int({"max_upload_size_mb": "abc"}, "max_upload_size_mb"), 30)

    def test_write_atomic_replaces_content_without_leftovers(self):
        target = self.storage.DATA_DIR / "blob.bin"
        target.write_bytes(b"old")

        self.storage.write_atomic(target, b"new")

        self.assertEqual(target.read_bytes(), b"new")
        self.assertEqual(sorted(p.name for p in self.storage.DATA_DIR.glob(".blob.bin.*")), [])

    def test_cleanup_removes_only_stale_temp_files(self):
        stale = self.storage.INCOMING_DIR / "stale.tmp"
        fresh = self.storage.INCOMING_DIR / "fresh.tmp"
        stale.write_bytes(b"x")
        fresh.write_bytes(b"y")
        old = time.time() - self.storage.TEMP_FILE_MAX_AGE_SECONDS - 60
        os.utime(stale, (old, old))

        self.assertEqual(self.storage.cleanup_temp_files(), 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())

    def test_remove_tree_refuses_paths_outside_root(self):
        inside = self.storage.USERS_DIR / "alice"
        inside.mkdir()
        (inside / "ABCD.png").write_bytes(b"png")

        self.assertFalse(self.storage.remove_tree(self.storage.USERS_DIR, self.storage.USERS_DIR))
        self.assertFalse(self.storage.remove_tree(self.storage.DATA_DIR, self.storage.USERS_DIR))
        self.assertTrue(self.storage.DATA_DIR.is_dir())

        self.assertTrue(self.storage.remove_tree(inside, self.storage.USERS_DIR))
        self.assertFalse(inside.exists())

    def test_asset_rows_are_keyed_by_directory(self):
        owner_dir = self.storage.USERS_DIR / "alice"
        owner_dir.mkdir()
        anonymous_id = self.storage.register_asset(
            self.storage.ANONYMOUS_DIR, "ABCD.png", 10, "image/png", uploader_ip="1.2.3.4"
        )
        self.storage.register_asset(owner_dir, "ABCD.png", 20, "image/png", owner_id="owner-1")

        anonymous = self.storage.get_asset(self.storage.ANONYMOUS_DIR, "ABCD.png")
        self.assertEqual(anonymous["id"], anonymous_id)
        self.assertEqual(anonymous["directory"], "public")
        self.assertEqual(self.storage.get_asset(owner_dir, "ABCD.png")["owner_id"], "owner-1")

        stats = self.storage.get_storage_statistics()
        self.assertEqual(stats["asset_count"], 2)
        self.assertEqual(stats["total_bytes"], 30)
        self.assertEqual(stats["anonymous_count"], 1)

        self.assertTrue(self.storage.delete_asset_record(anonymous_id))
        self.assertIsNone(self.storage.get_asset_by_id(anonymous_id))

    def test_analytics_summary_aggregates_uploads(self):
        self.storage.record_upload_analytics("alice", "png", 100)
        self.storage.record_upload_analytics("alice", "png", 50)
        self.storage.record_upload_analytics("anonymous", "jpg", 10)

        summary = self.storage.get_analytics_summary(7)

        self.assertEqual(summary["uploadVolume"][0]["count"], 3)
        self.assertEqual(summary["uploadVolume"][0]["bytes"], 160)
        self.assertEqual(summary["fileTypeDistribution"][0], {"type": "png", "count": 2})
        self.assertEqual(summary["userActivity"][0], {"username": "alice", "count": 2})

    def test_migration_is_idempotent(self):
        self.storage.migrate_asset_watermark_state()
        self.storage.init_db()
        with self.storage.get_db() as conn:
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(assets)")}
        self.assertIn("watermark_state", columns)


if __name__ == "__main__":
    unittest.main()

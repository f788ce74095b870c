import io
import os
import tempfile
import time
import unittest
from datetime import timedelta
from pathlib import Path
from unittest import mock

from mediadrop import storage
from mediadrop.app import SCHEDULER_EXTENSION_KEY, SWEEP_JOB_ID, create_app, stop_sweeper
from mediadrop.settings import Settings


class SweepExpiredFilesTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.upload_dir = Path(self.storage_dir.name) / "uploads"
        self.upload_dir.mkdir()
        self.settings = Settings(upload_dir=self.upload_dir, max_age_minutes=10)
        self.now = time.time()

    def tearDown(self):
        self.storage_dir.cleanup()

    def _write(self, name: str, age_minutes: float) -> Path:
        path = self.upload_dir / name
        path.write_bytes(b"data")
        mtime = self.now - age_minutes * 60
        os.utime(path, (mtime, mtime))
        return path

    def test_file_survives_until_older_than_ttl(self):
        written_at = self.now
        path = self._write("clip.mp4", 0)

        removed = storage.sweep_expired_files(self.settings, now=written_at + 5 * 60)
        self.assertEqual(removed, 0)
        self.assertTrue(path.exists())

        removed = storage.sweep_expired_files(self.settings, now=written_at + 15 * 60)
        self.assertEqual(removed, 1)
        self.assertFalse(path.exists())

    def test_remaining_files_are_within_ttl(self):
        ages = {"a.mp4": 1, "b.png": 9.99, "c.jpg": 9.5, "d.webp": 10.01, "e.mp4": 600}
        for name, age in ages.items():
            self._write(name, age)

        removed = storage.sweep_expired_files(self.settings, now=self.now)

        self.assertEqual(removed, 2)
        remaining = {path.name for path in self.upload_dir.iterdir()}
        self.assertEqual(remaining, {"a.mp4", "b.png", "c.jpg"})
        for name in remaining:
            age = (self.now - (self.upload_dir / name).stat().st_mtime) / 60
            self.assertLessEqual(age, self.settings.max_age_minutes)

    def test_directories_are_skipped(self):
        nested = self.upload_dir / "nested"
        nested.mkdir()
        old = self.now - 3600
        os.utime(nested, (old, old))

        removed = storage.sweep_expired_files(self.settings, now=self.now)

        self.assertEqual(removed, 0)
        self.assertTrue(nested.is_dir())

    def test_listing_failure_is_contained(self):
        settings = Settings(upload_dir=self.upload_dir / "missing", max_age_minutes=10)
        with self.assertLogs("mediadrop.sweeper", level="ERROR") as logs:
            removed = storage.sweep_expired_files(settings, now=self.now)
        self.assertEqual(removed, 0)
        self.assertTrue(any("sweep_list_failed" in line for line in logs.output))

    def test_stat_failure_skips_entry(self):
        self._write("gone.mp4", 60)
        with mock.patch.object(Path, "stat", side_effect=FileNotFoundError("vanished")):
            removed = storage.sweep_expired_files(self.settings, now=self.now)
        self.assertEqual(removed, 0)

    def test_concurrently_deleted_file_counts_as_removed(self):
        self._write("raced.mp4", 60)
        with mock.patch.object(Path, "unlink", side_effect=FileNotFoundError("vanished")):
            removed = storage.sweep_expired_files(self.settings, now=self.now)
        self.assertEqual(removed, 1)

    def test_delete_failure_is_logged_and_retried_next_tick(self):
        path = self._write("locked.mp4", 60)
        with mock.patch.object(Path, "unlink", side_effect=PermissionError("denied")):
            with self.assertLogs("mediadrop.sweeper", level="ERROR") as logs:
                removed = storage.sweep_expired_files(self.settings, now=self.now)
        self.assertEqual(removed, 0)
        self.assertTrue(path.exists())
        self.assertTrue(any("sweep_delete_failed" in line for line in logs.output))

        self.assertEqual(storage.sweep_expired_files(self.settings, now=self.now), 1)
        self.assertFalse(path.exists())

    def test_abandoned_temp_files_are_swept(self):
        self._write(".0a1b2c3d.tmp", 30)
        self.assertEqual(storage.sweep_expired_files(self.settings, now=self.now), 1)

    def _symlink(self, link: Path, target: Path, target_is_directory: bool = False) -> None:
        try:
            os.symlink(target, link, target_is_directory=target_is_directory)
        except (OSError, NotImplementedError) as error:
            self.skipTest(f"symlinks unavailable: {error}")

    def test_link_to_old_file_is_removed_but_target_kept(self):
        target = Path(self.storage_dir.name) / "outside.mp4"
        target.write_bytes(b"data")
        old = self.now - 3600
        os.utime(target, (old, old))
        link = self.upload_dir / "linked.mp4"
        self._symlink(link, target)

        removed = storage.sweep_expired_files(self.settings, now=self.now)

        self.assertEqual(removed, 1)
        self.assertFalse(os.path.lexists(link))
        self.assertTrue(target.exists())

    def test_link_to_directory_is_skipped(self):
        target = Path(self.storage_dir.name) / "outside-dir"
        target.mkdir()
        old = self.now - 3600
        os.utime(target, (old, old))
        link = self.upload_dir / "linked-dir"
        self._symlink(link, target, target_is_directory=True)

        removed = storage.sweep_expired_files(self.settings, now=self.now)

        self.assertEqual(removed, 0)
        self.assertTrue(os.path.lexists(link))
        self.assertTrue(target.is_dir())


class SaveUploadCleanupTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.upload_dir = Path(self.storage_dir.name)
        self.settings = Settings(upload_dir=self.upload_dir, max_upload_bytes=16)

    def tearDown(self):
        self.storage_dir.cleanup()

    def test_disk_failure_leaves_no_partial_file(self):
        with mock.patch("mediadrop.storage.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                storage.save_upload(
                    io.BytesIO(b"frames"),
                    self.settings,
                    original_name="clip.mp4",
                    mimetype="video/mp4",
                    suggested_name="clip",
                )
        self.assertEqual(list(self.upload_dir.iterdir()), [])

    def test_exact_limit_is_accepted(self):
        stored = storage.save_upload(
            io.BytesIO(b"x" * 16),
            self.settings,
            original_name="pic.png",
            mimetype="image/png",
        )
        self.assertEqual(stored.size, 16)
        self.assertEqual(stored.path.read_bytes(), b"x" * 16)
        self.assertEqual([path.name for path in self.upload_dir.iterdir()], [stored.filename])

    def test_longest_allowed_name_is_stored(self):
        settings = Settings(upload_dir=self.upload_dir, max_upload_bytes=16)
        stored = storage.save_upload(
            io.BytesIO(b"frames"),
            settings,
            original_name="clip.mp4",
            mimetype="video/mp4",
            suggested_name="b" * 251,
        )
        self.assertEqual(stored.filename, "b" * 251 + ".mp4")
        self.assertEqual(len(stored.filename), storage.MAX_FILENAME_LENGTH)
        self.assertEqual([path.name for path in self.upload_dir.iterdir()], [stored.filename])


class SweeperSchedulingTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.upload_dir = Path(self.storage_dir.name) / "uploads"

    def tearDown(self):
        self.storage_dir.cleanup()

    def test_scheduler_runs_sweep_on_interval(self):
        settings = Settings(
            upload_dir=self.upload_dir,
            max_age_minutes=10,
            sweep_interval_minutes=5,
            upload_rate_limit_per_hour=0,
        )
        app = create_app(settings, start_scheduler=True)
        try:
            scheduler = app.extensions[SCHEDULER_EXTENSION_KEY]
            self.assertTrue(scheduler.running)
            job = scheduler.get_job(SWEEP_JOB_ID)
            self.assertIsNotNone(job)
            self.assertEqual(job.trigger.interval, timedelta(minutes=5))
            self.assertEqual(job.args, (settings,))
        finally:
            stop_sweeper(app)
        self.assertFalse(scheduler.running)
        self.assertNotIn(SCHEDULER_EXTENSION_KEY, app.extensions)

    def test_non_positive_ttl_disables_sweeper(self):
        for ttl in (0, -5):
            with self.subTest(ttl=ttl):
                settings = Settings(
                    upload_dir=self.upload_dir,
                    max_age_minutes=ttl,
                    upload_rate_limit_per_hour=0,
                )
                with self.assertLogs("mediadrop.sweeper", level="WARNING") as logs:
                    app = create_app(settings, start_scheduler=True)
                self.assertNotIn(SCHEDULER_EXTENSION_KEY, app.extensions)
                self.assertTrue(any("auto_clean_disabled" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()

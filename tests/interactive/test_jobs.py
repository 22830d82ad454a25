import json
import os
import re
import threading
import time

from tests.base import TempDirTestCase, make_job
from vcopilot.interactive.jobs import (
    JOB_COMPLETED,
    JOB_DISPATCHED,
    JobStore,
    parse_timestamp,
    utc_now,
)


class JobStoreTests(TempDirTestCase):
    def test_generated_ids_are_unique_and_file_safe(self) -> None:
        ids = {JobStore.generate_id() for _ in range(200)}

        self.assertEqual(200, len(ids))
        for job_id in ids:
            self.assertRegex(job_id, r"^[0-9a-z]+_[0-9a-z]{6}$")

    def test_record_uses_camel_case_keys_and_omits_unset_fields(self) -> None:
        self._jobs.write(make_job())

        data = json.loads(self._jobs.path_for("abc_123456").read_text())

        self.assertEqual(JOB_DISPATCHED, data["status"])
        self.assertEqual(6, data["promptLength"])
        self.assertEqual("ext1", data["extensionId"])
        self.assertEqual("https://chatgpt.com/c/1", data["pageUrl"])
        self.assertNotIn("response", data)
        self.assertNotIn("watcherPid", data)

    def test_read_back_and_update(self) -> None:
        self._jobs.write(make_job())

        updated = self._jobs.update("abc_123456", status=JOB_COMPLETED, response="hi", response_length=2)

        self.assertEqual(JOB_COMPLETED, updated.status)
        job = self._jobs.read("abc_123456")
        self.assertEqual("hi", job.response)
        self.assertEqual(2, job.response_length)
        self.assertEqual("Say hi", job.prompt)

    def test_update_of_missing_job_creates_nothing(self) -> None:
        self.assertIsNone(self._jobs.update("ghost", status=JOB_COMPLETED))
        self.assertFalse(self._jobs.path_for("ghost").exists())

    def test_malformed_record_reads_as_none(self) -> None:
        self._jobs.jobs_dir.mkdir(parents=True)
        self._jobs.path_for("bad").write_text("{half")

        self.assertIsNone(self._jobs.read("bad"))

    def test_concurrent_reader_never_sees_partial_record(self) -> None:
        self._jobs.write(make_job())
        stop = threading.Event()
        misses: list[int] = []

        def writer():
            n = 0
            while not stop.is_set():
                n += 1
                self._jobs.update("abc_123456", response="x" * (n % 5000), last_heartbeat=utc_now())

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            for _ in range(300):
                if self._jobs.read("abc_123456") is None:
                    misses.append(1)
        finally:
            stop.set()
            thread.join()

        self.assertEqual([], misses)
        leftovers = [p for p in self._jobs.jobs_dir.iterdir() if p.name.endswith(".tmp")]
        self.assertEqual([], leftovers)

    def test_cleanup_removes_only_old_json_files(self) -> None:
        self._jobs.write(make_job("old_000000"))
        self._jobs.write(make_job("new_000000"))
        other = self._jobs.jobs_dir / "notes.txt"
        other.write_text("keep")
        old = time.time() - 2 * 24 * 3600
        os.utime(self._jobs.path_for("old_000000"), (old, old))
        os.utime(other, (old, old))

        removed = self._jobs.cleanup_old_jobs(24 * 3600)

        self.assertEqual(1, removed)
        self.assertFalse(self._jobs.path_for("old_000000").exists())
        self.assertTrue(self._jobs.path_for("new_000000").exists())
        self.assertTrue(other.exists())

    def test_cleanup_removes_abandoned_temp_files(self) -> None:
        self._jobs.write(make_job("new_000000"))
        stale = self._jobs.jobs_dir / ".old_000000.json.k2j4.tmp"
        fresh = self._jobs.jobs_dir / ".new_000000.json.a8x1.tmp"
        stale.write_text("{\"sta")
        fresh.write_text("{\"sta")
        old = time.time() - 2 * 24 * 3600
        os.utime(stale, (old, old))

        removed = self._jobs.cleanup_old_jobs(24 * 3600)

        self.assertEqual(1, removed)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())
        self.assertTrue(self._jobs.path_for("new_000000").exists())

    def test_cleanup_without_directory(self) -> None:
        self.assertEqual(0, JobStore(self._tmp_dir / "nowhere").cleanup_old_jobs())


class InteractiveJobTests(TempDirTestCase):
    def test_timestamps_are_utc_with_z_suffix(self) -> None:
        stamp = utc_now()

        self.assertTrue(re.match(r"^\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z$", stamp))
        self.assertAlmostEqual(time.time(), parse_timestamp(stamp), delta=5)

    def test_heartbeat_age(self) -> None:
        job = make_job(last_heartbeat="2024-01-01T00:00:00.000Z")
        beat = parse_timestamp("2024-01-01T00:00:00.000Z")

        self.assertEqual(31, job.heartbeat_age(now=beat + 31))
        self.assertIsNone(make_job().heartbeat_age())

import asyncio
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

from tests.base import TempDirTestCase, make_job
from tests.fakes import FakePage, fake_handle
from vcopilot.errors import InteractiveError, JobTimeoutError, JobVanishedError, PageNotFoundError
from vcopilot.interactive.jobs import JOB_COMPLETED, JOB_ERROR, JOB_WATCHING, parse_timestamp
from vcopilot.interactive.session import spawn_watcher
from vcopilot.interactive.watcher import main, watch_job

CONVERSATION = "https://chatgpt.com/c/1"


class WatchJobTests(TempDirTestCase):
    def _watch(self, pages, **kwargs):
        handle = fake_handle(pages=pages)
        kwargs.setdefault("page_retry_delay", 0)
        kwargs.setdefault("heartbeat_interval", 0.01)
        result = asyncio.run(
            watch_job("abc_123456", self._jobs, connect=AsyncMock(return_value=handle), **kwargs)
        )
        return result, handle

    def test_completed_reply_is_recorded(self) -> None:
        self._jobs.write(make_job())
        page = FakePage(CONVERSATION, reply="## Hi\n\nThere")

        response, handle = self._watch([FakePage("https://example.com"), page])

        self.assertEqual("## Hi\n\nThere", response)
        job = self._jobs.read("abc_123456")
        self.assertEqual(JOB_COMPLETED, job.status)
        self.assertEqual("## Hi\n\nThere", job.response)
        self.assertEqual(len("## Hi\n\nThere"), job.response_length)
        self.assertEqual(os.getpid(), job.watcher_pid)
        self.assertIsNotNone(job.completed_at)
        handle.disconnect.assert_awaited_once()

    def test_connects_with_recorded_relay_and_extension(self) -> None:
        self._jobs.write(make_job())
        connect = AsyncMock(return_value=fake_handle(pages=[FakePage(CONVERSATION)]))

        asyncio.run(watch_job("abc_123456", self._jobs, connect=connect, page_retry_delay=0))

        connect.assert_awaited_once_with("ws://127.0.0.1:19988/cdp?extensionId=ext1")

    def test_heartbeat_advances_while_waiting(self) -> None:
        self._jobs.write(make_job())
        page = FakePage(CONVERSATION)
        page.finish_after = 0.2
        beats: list[str] = []
        original_update = self._jobs.update

        def spy(job_id, **changes):
            if "last_heartbeat" in changes:
                beats.append(changes["last_heartbeat"])
            return original_update(job_id, **changes)

        self._jobs.update = spy

        self._watch([page], heartbeat_interval=0.02)

        self.assertGreater(len(beats), 2)
        stamps = [parse_timestamp(b) for b in beats]
        self.assertEqual(sorted(stamps), stamps)

    def test_already_finished_reply_is_extracted_directly(self) -> None:
        self._jobs.write(make_job())
        page = FakePage(CONVERSATION, generating=False)

        self._watch([page])

        self.assertFalse(any(a[0] == "wait_for" for a in page.actions))
        self.assertIn(("evaluate",), page.actions)

    def test_path_match_when_query_differs(self) -> None:
        self._jobs.write(make_job())
        page = FakePage(CONVERSATION + "?model=gpt-4o", reply="matched")

        response, _ = self._watch([FakePage("https://chatgpt.com/"), page])

        self.assertEqual("matched", response)

    def test_missing_page_records_error_with_available_urls(self) -> None:
        self._jobs.write(make_job())

        with self.assertRaises(PageNotFoundError):
            self._watch([FakePage("https://example.com/x")])

        job = self._jobs.read("abc_123456")
        self.assertEqual(JOB_ERROR, job.status)
        self.assertIn("https://chatgpt.com/c/1", job.error)
        self.assertIn("https://example.com/x", job.error)

    def test_generation_timeout_records_error(self) -> None:
        self._jobs.write(make_job())
        page = FakePage(CONVERSATION)
        page.never_finishes = True

        with self.assertRaises(JobTimeoutError):
            self._watch([page], generation_timeout=1)

        self.assertEqual(JOB_ERROR, self._jobs.read("abc_123456").status)

    def test_missing_job(self) -> None:
        with self.assertRaises(JobVanishedError):
            self._watch([])

    def test_job_not_in_dispatched_state(self) -> None:
        self._jobs.write(make_job(status=JOB_WATCHING))

        with self.assertRaises(InteractiveError):
            self._watch([])

    def test_failed_heartbeat_does_not_hide_the_reply(self) -> None:
        self._jobs.write(make_job())
        page = FakePage(CONVERSATION, reply="still here")
        page.finish_after = 0.1
        original_update = self._jobs.update

        def flaky(job_id, **changes):
            if set(changes) == {"last_heartbeat"}:
                raise OSError("disk full")
            return original_update(job_id, **changes)

        self._jobs.update = flaky

        response, _ = self._watch([page], heartbeat_interval=0.01)

        self.assertEqual("still here", response)
        self.assertEqual(JOB_COMPLETED, self._jobs.read("abc_123456").status)


class WatcherMainTests(TempDirTestCase):
    def test_spawned_watcher_uses_the_dispatcher_config_dir(self) -> None:
        dispatcher_dir = self._tmp_dir / "cli"
        other_dir = self._tmp_dir / "file"
        spawned = Mock(return_value=SimpleNamespace(pid=42))
        with patch("vcopilot.interactive.session.spawn_detached", spawned):
            self.assertEqual(42, spawn_watcher("abc_123456", config_dir=str(dispatcher_dir)))
        argv = spawned.call_args.args[0][3:]

        watch = AsyncMock(return_value="done")
        with (
            patch("vcopilot.app_config.load_json_config", return_value={"ConfigDir": str(other_dir)}),
            patch("vcopilot.logging_config.setup_logging"),
            patch("vcopilot.interactive.watcher.load_dotenv"),
            patch("vcopilot.interactive.watcher.watch_job", watch),
        ):
            self.assertEqual(0, main(argv))

        job_id, store = watch.await_args.args
        self.assertEqual("abc_123456", job_id)
        self.assertEqual(dispatcher_dir / "jobs", store.jobs_dir)

    def test_failure_exit_code(self) -> None:
        with (
            patch("vcopilot.app_config.load_json_config", return_value={}),
            patch("vcopilot.logging_config.setup_logging"),
            patch("vcopilot.interactive.watcher.load_dotenv"),
            patch("vcopilot.interactive.watcher.watch_job", AsyncMock(side_effect=JobVanishedError("gone"))),
        ):
            self.assertEqual(1, main(["abc_123456", "--config-dir", str(self._tmp_dir)]))

import asyncio
import contextlib
import io
import time
from types import SimpleNamespace
from unittest.mock import Mock, patch

from tests.base import TempDirTestCase
from tests.fakes import FakeBackend
from vcopilot.__main__ import build_parser, main, run_command
from vcopilot.app_config import RuntimeEnv, parse_app_config
from vcopilot.auth.manager import CredentialManager
from vcopilot.auth.resolver import CredentialResolver
from vcopilot.auth.session import SessionExchanger
from vcopilot.backends.base import BackendMode
from vcopilot.bootstrap import AppRuntime, bootstrap_runtime
from vcopilot.errors import VCopilotError
from vcopilot.models import LongLivedCredential, ModelInfo, SessionCredential
from vcopilot.router import DispatchRouter


class CommandTests(TempDirTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.backend = FakeBackend(
            BackendMode.REMOTE, "The answer is 4", models=[ModelInfo(id="gpt-4o", context_window=128000)]
        )
        self.runtime = AppRuntime(
            router=DispatchRouter({BackendMode.REMOTE: self.backend}),
            manager=CredentialManager(
                self._store,
                CredentialResolver(self._store, env={}, external_paths=[]),
                SessionExchanger(self._store),
                allow_device_flow=False,
            ),
            job_store=self._jobs,
            config_dir=self._tmp_dir,
            log_descriptions=[],
        )

    def _run(self, *argv: str) -> str:
        args = build_parser().parse_args(list(argv))
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            asyncio.run(run_command(self.runtime, args))
        return out.getvalue()

    def test_chat_streams_to_stdout(self) -> None:
        self.assertEqual("The answer is 4 \n", self._run("chat", "What", "is", "2+2?"))
        self.assertEqual("What is 2+2?", self.backend.requests[0].messages[-1].content)

    def test_chat_without_streaming(self) -> None:
        self.assertEqual("The answer is 4\n", self._run("chat", "--no-stream", "--system", "Be terse", "hi"))
        self.assertEqual("system", self.backend.requests[0].messages[0].role)

    def test_models(self) -> None:
        self.assertEqual("gpt-4o (128,000 ctx)\n", self._run("models"))

    def test_status_and_logout(self) -> None:
        self._store.write_long_lived(LongLivedCredential(token="gho_cached", timestamp="2024-05-01T10:00:00+00:00"))
        self._store.write_session(SessionCredential(token="s", expires_at=time.time() + 1200))

        status = self._run("status")
        self.assertIn("GitHub token: store (saved 2024-05-01T10:00:00+00:00)", status)
        self.assertIn("Token: gho_...ched", status)
        self.assertIn("Session token: valid for", status)

        self._run("logout")
        self.assertIn("Not logged in", self._run("status"))

    def test_complete(self) -> None:
        self.assertEqual("The answer is 4\n", self._run("complete", "def", "add(a,", "b):", "--suffix", "pass"))
        self.assertEqual(("def add(a, b):", {"suffix": "pass"}), self.backend.requests[0])

    def test_complete_code_lists_suggestions(self) -> None:
        out = self._run("complete", "--code", "--language", "go", "func main()")

        self.assertEqual(
            "--- suggestion 1 ---\nThe answer is 4\n--- suggestion 2 ---\nTHE ANSWER IS 4\n", out
        )
        self.assertEqual("go", self.backend.requests[0][1]["language"])

    def test_usage(self) -> None:
        out = self._run("usage")

        self.assertIn("Prompt tokens:     1,200", out)
        self.assertIn("Total tokens:      1,500", out)

    def test_complete_needs_remote_backend(self) -> None:
        self.runtime.router = DispatchRouter({BackendMode.LOCAL: self.backend}, BackendMode.LOCAL)

        with self.assertRaises(VCopilotError):
            self._run("complete", "hi")

    def test_explain_reads_file(self) -> None:
        source = self._tmp_dir / "snippet.py"
        source.write_text("print('hi')")

        self.assertEqual("The answer is 4\n", self._run("explain", str(source)))
        self.assertIn("print('hi')", self.backend.requests[0].messages[1].content)

    def test_refactor_infers_language_from_suffix(self) -> None:
        source = self._tmp_dir / "app.ts"
        source.write_text("var x = 1")

        self._run("refactor", str(source))

        self.assertIn("typescript", self.backend.requests[0].messages[0].content)


class BootstrapTests(TempDirTestCase):
    def test_backends_follow_configuration(self) -> None:
        env = RuntimeEnv(github_token=None, copilot_token=None, local_api_key=None, debug=False)

        plain = bootstrap_runtime(parse_app_config({"ConfigDir": str(self._tmp_dir)}), env)
        with_local = bootstrap_runtime(
            parse_app_config({"ConfigDir": str(self._tmp_dir), "LocalEndpointUrl": "http://localhost:1234/v1"}),
            env,
            mode="local",
        )

        self.assertEqual([BackendMode.REMOTE, BackendMode.INTERACTIVE], plain.router.modes)
        self.assertEqual(BackendMode.REMOTE, plain.router.default_mode)
        self.assertIn(BackendMode.LOCAL, with_local.router.modes)
        self.assertEqual(BackendMode.LOCAL, with_local.router.default_mode)
        self.assertEqual(self._tmp_dir / "jobs", plain.job_store.jobs_dir)

        asyncio.run(plain.router.aclose())
        asyncio.run(with_local.router.aclose())


class MainTests(TempDirTestCase):
    def test_logout_exit_code(self) -> None:
        self._store.write_long_lived(LongLivedCredential(token="gho_cached"))

        self.assertEqual(0, main(["--config-dir", str(self._tmp_dir), "logout"]))
        self.assertIsNone(self._store.read_long_lived())

    def test_errors_become_exit_code_one(self) -> None:
        self.assertEqual(1, main(["--config-dir", str(self._tmp_dir), "--mode", "local", "chat", "hi"]))

    def test_serve_detached_spawns_server_and_writes_pid_file(self) -> None:
        spawn = Mock(return_value=SimpleNamespace(pid=4242))
        argv = ["--config-dir", str(self._tmp_dir), "serve", "--port", "3100", "--detached"]

        with patch("vcopilot.__main__.spawn_detached", spawn):
            self.assertEqual(0, main(argv))

        child_args = spawn.call_args.args[0]
        self.assertEqual(["-m", "vcopilot", "--config-dir", str(self._tmp_dir), "serve", "--port", "3100"], child_args[1:])
        self.assertEqual("4242", (self._tmp_dir / "serve.pid").read_text())

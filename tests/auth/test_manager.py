import asyncio
import time
from unittest.mock import AsyncMock, Mock

from tests.base import TempDirTestCase
from vcopilot.auth.manager import CredentialManager, mask_token
from vcopilot.auth.resolver import CredentialResolver
from vcopilot.models import LongLivedCredential, SessionCredential


class CredentialManagerTests(TempDirTestCase):
    def _manager(self, *, override=None, env=None, device_flow=None):
        resolver = CredentialResolver(
            self._store,
            env=env or {},
            device_flow=device_flow or AsyncMock(return_value="gho_device"),
            external_paths=[],
        )
        exchanger = Mock()
        exchanger.ensure_session = AsyncMock(
            return_value=SessionCredential(token="sess", expires_at=time.time() + 1800)
        )
        return CredentialManager(self._store, resolver, exchanger, override=override), exchanger

    def test_long_lived_token_resolved_once(self) -> None:
        device_flow = AsyncMock(return_value="gho_device")
        manager, exchanger = self._manager(device_flow=device_flow)

        async def scenario():
            await manager.session()
            await manager.session()

        asyncio.run(scenario())

        device_flow.assert_awaited_once()
        self.assertEqual(2, exchanger.ensure_session.await_count)
        passed = exchanger.ensure_session.await_args.args[0]
        self.assertEqual("gho_device", passed.token)

    def test_logout_clears_cache_and_session(self) -> None:
        self._store.write_long_lived(LongLivedCredential(token="cached"))
        self._store.write_session(SessionCredential(token="sess", expires_at=time.time() + 3600))
        manager, exchanger = self._manager()

        manager.logout()

        self.assertIsNone(self._store.read_long_lived())
        self.assertIsNone(self._store.read_session())
        exchanger.invalidate.assert_called_once()

    def test_login_always_runs_device_flow(self) -> None:
        self._store.write_long_lived(LongLivedCredential(token="cached"))
        device_flow = AsyncMock(return_value="gho_fresh")
        manager, _ = self._manager(device_flow=device_flow)

        credential = asyncio.run(manager.login())

        self.assertEqual("gho_fresh", credential.token)
        self.assertEqual("gho_fresh", self._store.read_long_lived().token)

    def test_status_reports_source_and_session_lifetime(self) -> None:
        self._store.write_session(SessionCredential(token="sess", expires_at=time.time() + 600))
        manager, _ = self._manager(env={"GITHUB_TOKEN": "gh"})

        status = manager.status()

        self.assertTrue(status.logged_in)
        self.assertEqual("env:GITHUB_TOKEN", status.source)
        self.assertGreater(status.session_seconds_left, 500)
        self.assertEqual(str(self._tmp_dir), status.config_dir)
        self.assertEqual("**", status.masked_token)

    def test_status_when_logged_out_does_not_prompt(self) -> None:
        device_flow = AsyncMock(return_value="gho_device")
        manager, _ = self._manager(device_flow=device_flow)

        status = manager.status()

        self.assertFalse(status.logged_in)
        self.assertIsNone(status.session_seconds_left)
        self.assertIsNone(status.masked_token)
        device_flow.assert_not_awaited()

    def test_mask_token(self) -> None:
        self.assertEqual("gho_...wxyz", mask_token("gho_abcdefwxyz"))
        self.assertEqual("****", mask_token("abcd"))

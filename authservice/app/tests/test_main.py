"""
Startup Tests

Provider discovery retries, store creation and the readiness flag.
"""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from authservice.app.auth.oidc import DiscoveryError
from authservice.app.dependencies import AppState
from authservice.app.main import DISCOVERY_RETRY_SECONDS, setup

from conftest import make_settings


class TestSetup:

    @pytest.mark.asyncio
    async def test_retries_discovery_then_becomes_ready(self):
        app_state = AppState(make_settings(STORE_REAP_INTERVAL=3600))
        oidc = Mock()
        discover = AsyncMock(side_effect=[DiscoveryError("connection refused"), oidc])
        sleep = AsyncMock()

        with patch("authservice.app.main.OIDCClient.discover", discover), \
                patch("authservice.app.main.asyncio.sleep", sleep):
            await setup(app_state)

        try:
            assert app_state.readiness.is_set()
            assert app_state.oidc is oidc
            assert app_state.sessions is not None
            assert app_state.states is not None
            assert discover.await_count == 2
            sleep.assert_awaited_once_with(DISCOVERY_RETRY_SECONDS)
        finally:
            app_state.reaper.cancel()

    @pytest.mark.asyncio
    async def test_unreadable_ca_bundle_is_fatal(self, tmp_path):
        app_state = AppState(make_settings(CA_BUNDLE=str(tmp_path / "missing.pem")))

        with pytest.raises(OSError):
            await setup(app_state)

        assert not app_state.readiness.is_set()

    @pytest.mark.asyncio
    async def test_not_ready_while_discovery_fails(self):
        app_state = AppState(make_settings())
        discover = AsyncMock(side_effect=DiscoveryError("connection refused"))
        sleep = AsyncMock(side_effect=[None, RuntimeError("stop")])

        with patch("authservice.app.main.OIDCClient.discover", discover), \
                patch("authservice.app.main.asyncio.sleep", sleep):
            with pytest.raises(RuntimeError):
                await setup(app_state)

        assert discover.await_count == 2
        assert not app_state.readiness.is_set()

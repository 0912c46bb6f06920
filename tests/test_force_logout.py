"""Tests for the force-logout operator script."""

import importlib.util
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent


def _load_script():
    spec = importlib.util.spec_from_file_location(
        "force_logout", ROOT / "scripts" / "force_logout.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def script():
    return _load_script()


class TestForceLogout:
    async def test_by_user_id(self, script, sessions):
        grant = await sessions.create_session("user-1")

        result = await script.force_logout(sessions, user_id="user-1")

        assert result["status"] == "removed"
        assert result["session_id"] == grant.session_id[:8] + "..."
        assert await sessions.get_active_session("user-1") is None

    async def test_by_session_id(self, script, sessions):
        grant = await sessions.create_session("user-1")

        result = await script.force_logout(sessions, session_id=grant.session_id)

        assert result["user_id"] == "user-1"
        assert result["status"] == "removed"
        assert await sessions.get_session_owner(grant.session_id) is None

    async def test_unknown_session_id(self, script, sessions):
        result = await script.force_logout(sessions, session_id="unknown")

        assert result["status"] == "not_found"

    async def test_dry_run_changes_nothing(self, script, sessions):
        grant = await sessions.create_session("user-1")

        result = await script.force_logout(sessions, user_id="user-1", dry_run=True)

        assert result["status"] == "dry_run"
        active = await sessions.get_active_session("user-1")
        assert active.session_id == grant.session_id

    def test_cli_requires_a_target(self, script):
        with pytest.raises(SystemExit):
            script.main([])

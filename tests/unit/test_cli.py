"""Tests for the deskpilot command line."""
import pytest
from typer.testing import CliRunner

from deskpilot import main
from deskpilot.main import app
from tests.conftest import FakeDesktopProvider


runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch, fake_provider: FakeDesktopProvider) -> FakeDesktopProvider:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DESKPILOT_SETTINGS", raising=False)
    monkeypatch.setattr(main, "configure_logging", lambda level="INFO": None)
    monkeypatch.setattr(main, "create_provider", lambda profile: fake_provider)
    return fake_provider


def test_create_prints_id_and_stream(fake_provider: FakeDesktopProvider) -> None:
    result = runner.invoke(app, ["create"])

    assert result.exit_code == 0, result.output
    assert "sbx-1" in result.output
    assert fake_provider.count("create") == 1


def test_create_attaches_to_running_sandbox(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine")

    result = runner.invoke(app, ["create", "--attach", "mine"])

    assert result.exit_code == 0, result.output
    assert "mine" in result.output
    assert fake_provider.count("create") == 0


def test_status_shows_state(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine", state="paused")

    result = runner.invoke(app, ["status", "mine"])

    assert result.exit_code == 0
    assert "paused" in result.output


def test_pause_prints_new_id(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine")

    result = runner.invoke(app, ["pause", "mine"])

    assert result.exit_code == 0, result.output
    new_id = next(sid for sid in fake_provider.states if sid != "mine")
    assert new_id in result.output


def test_pause_paused_sandbox_fails(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine", state="paused")

    result = runner.invoke(app, ["pause", "mine"])

    assert result.exit_code == 1
    assert "Cannot pause" in result.output
    assert fake_provider.count("pause") == 0


def test_resume_paused_sandbox(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine", state="paused")

    result = runner.invoke(app, ["resume", "mine"])

    assert result.exit_code == 0, result.output
    assert fake_provider.states["mine"] == "running"


def test_kill_twice_succeeds(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine")

    first = runner.invoke(app, ["kill", "mine"])
    second = runner.invoke(app, ["kill", "mine"])

    assert first.exit_code == 0
    assert second.exit_code == 0


def test_type_delivers_text(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine")

    result = runner.invoke(app, ["type", "mine", "Hello 世界"])

    assert result.exit_code == 0, result.output
    assert fake_provider.typed_text("mine") == "Hello 世界"


def test_type_reads_stdin(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine")

    result = runner.invoke(app, ["type", "mine"], input="from stdin")

    assert result.exit_code == 0, result.output
    assert fake_provider.typed_text("mine") == "from stdin"


def test_diagnose_healthy_sandbox(fake_provider: FakeDesktopProvider) -> None:
    fake_provider.add_sandbox("mine")

    result = runner.invoke(app, ["diagnose", "mine"])

    assert result.exit_code == 0, result.output
    assert "x11_tools" in result.output


def test_diagnose_unhealthy_sandbox_exits_nonzero(fake_provider: FakeDesktopProvider) -> None:
    result = runner.invoke(app, ["diagnose", "ghost"])

    assert result.exit_code == 1
    assert "status" in result.output


def test_unknown_profile_exits_with_error() -> None:
    result = runner.invoke(app, ["status", "mine", "--profile", "nope"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_missing_sandbox_id_is_usage_error() -> None:
    result = runner.invoke(app, ["pause"])

    assert result.exit_code == 2

from __future__ import annotations

from types import SimpleNamespace

import pytest

from tutor_gateway import cli


def test_print_help_lists_subcommands(capsys: pytest.CaptureFixture[str]) -> None:
    cli._print_help()
    output = capsys.readouterr().out
    assert "tutor-gateway setup" in output
    assert "tutor-gateway doctor" in output
    assert "tutor-gateway agents" in output


def test_main_setup_subcommand_prints_setup_and_exits(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {}

    def fake_get_settings() -> SimpleNamespace:
        return SimpleNamespace(provider_name="stub", http_port=4280, agent_config_dir=None)

    def fake_setup_banner(provider: str, port: int, agent_count: int, *, for_startup: bool) -> None:
        calls["provider"] = provider
        calls["port"] = port
        calls["agent_count"] = agent_count
        calls["for_startup"] = for_startup

    monkeypatch.setattr("tutor_gateway.config.get_settings", fake_get_settings)
    monkeypatch.setattr(cli, "_print_setup_banner", fake_setup_banner)
    monkeypatch.setattr(cli.sys, "argv", ["tutor-gateway", "setup"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 0
    assert calls == {
        "provider": "stub",
        "port": 4280,
        "agent_count": 6,
        "for_startup": False,
    }


def test_setup_banner_shows_endpoints(capsys: pytest.CaptureFixture[str]) -> None:
    cli._print_setup_banner("stub", 4280, 6, for_startup=True)
    output = capsys.readouterr().out
    assert "Tutor gateway started with 6 agents" in output
    assert "POST http://localhost:4280/chat" in output
    assert "no API key required" in output


def test_print_doctor_reports_runtime_info(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    env,
) -> None:
    monkeypatch.setattr(cli.shutil, "which", lambda _name: "/tmp/tutor-gateway")

    with env({"PROVIDER": "gemini", "GEMINI_API_KEY": "", "DATABASE_URL": ""}):
        cli._print_doctor()

    output = capsys.readouterr().out
    assert "Tutor Gateway Doctor" in output
    assert "PATH bin: /tmp/tutor-gateway" in output
    assert "Provider: gemini" in output
    assert "Store:    sqlite" in output
    assert "GEMINI_API_KEY is not set" in output


def test_agents_subcommand_lists_bundled_agents(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli.sys, "argv", ["tutor-gateway", "agents"])
    monkeypatch.delenv("AGENT_CONFIG_DIR", raising=False)

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 0
    lines = capsys.readouterr().out.splitlines()
    ids = [line.split()[0] for line in lines if line.strip()]
    assert "maestro" in ids
    assert "visualizer" in ids


def test_agents_subcommand_reports_bad_config(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    tmp_path,
) -> None:
    (tmp_path / "broken.yaml").write_text("id: broken\n", encoding="utf-8")
    monkeypatch.setenv("AGENT_CONFIG_DIR", str(tmp_path))
    monkeypatch.setattr(cli.sys, "argv", ["tutor-gateway", "agents"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_unknown_subcommand_exits_with_usage_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli.sys, "argv", ["tutor-gateway", "bogus"])
    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 2

import asyncio
import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from fluxer_channel import cli as cli_module
from fluxer_channel.cli import app
from fluxer_channel.fluxer.errors import FluxerGatewayHalted
from fluxer_channel.fluxer.pairing_store import SqlitePairingStore

runner = CliRunner()


def _write_config(tmp_path: Path, **section) -> Path:
    section.setdefault("stateFile", "state/pairing.sqlite3")
    section.setdefault("mediaDir", "state/media")
    config_path = tmp_path / "fluxer-channel.yml"
    config_path.write_text(
        yaml.safe_dump({"channels": {"fluxer": section}}), encoding="utf-8"
    )
    return config_path


def _seed_pairing(db_path: Path, sender_id: str) -> str:
    async def _seed() -> str:
        store = SqlitePairingStore(db_path)
        try:
            request = await store.upsert_pairing_request(
                "fluxer", sender_id, {"name": "alice"}
            )
        finally:
            await store.close()
        return request.code

    return asyncio.run(_seed())


def test_status_prints_account(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("FLUXER_BOT_TOKEN", raising=False)
    config_path = _write_config(tmp_path, token="abc", name="Main")

    result = runner.invoke(app, ["status", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["configured"] is True
    assert payload["tokenSource"] == "config"
    assert payload["name"] == "Main"


def test_probe_without_token_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("FLUXER_BOT_TOKEN", raising=False)
    config_path = _write_config(tmp_path)

    result = runner.invoke(app, ["probe", "--config", str(config_path)])

    assert result.exit_code == 1
    assert '"error": "no token"' in result.output


def test_invalid_config_exits_with_message(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, token="abc", groupPolicy="sometimes")

    result = runner.invoke(app, ["status", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "groupPolicy" in result.output


def test_start_refuses_disabled_channel(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, token="abc", enabled=False)

    result = runner.invoke(app, ["start", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "disabled" in result.output


def test_pairing_list_and_approve(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("FLUXER_BOT_TOKEN", raising=False)
    config_path = _write_config(tmp_path)
    db_path = tmp_path / "state" / "pairing.sqlite3"

    empty = runner.invoke(app, ["pairing", "list", "--config", str(config_path)])
    assert empty.exit_code == 0, empty.output
    assert "No pending pairing requests." in empty.output

    code = _seed_pairing(db_path, "u42")

    listed = runner.invoke(app, ["pairing", "list", "--config", str(config_path)])
    assert listed.exit_code == 0, listed.output
    assert code in listed.output
    assert "u42" in listed.output

    approved = runner.invoke(
        app, ["pairing", "approve", code, "--no-notify", "--config", str(config_path)]
    )
    assert approved.exit_code == 0, approved.output
    assert "Approved u42." in approved.output

    missing = runner.invoke(
        app, ["pairing", "approve", code, "--config", str(config_path)]
    )
    assert missing.exit_code == 1
    assert "No pending pairing request" in missing.output


def test_start_reports_halted_gateway(tmp_path: Path, monkeypatch) -> None:
    config_path = _write_config(tmp_path, token="abc")
    seen: dict[str, object] = {}

    async def _halting_start(account, *, runtime, **_kwargs) -> None:
        seen["max_bytes"] = runtime.media_fetcher._max_bytes
        raise FluxerGatewayHalted("closed with code 4004", close_code=4004)

    monkeypatch.setattr(cli_module, "start_account", _halting_start)

    result = runner.invoke(
        app,
        ["start", "--config", str(config_path), "--log", str(tmp_path / "channel.log")],
    )

    assert result.exit_code == 1
    assert "Fluxer gateway halted: closed with code 4004" in result.output
    assert seen["max_bytes"] == 25 * 1024 * 1024

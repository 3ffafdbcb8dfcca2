from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import pytest

from fluxer_channel.core.exceptions import ConfigurationError
from fluxer_channel.fluxer import channel as channel_module
from fluxer_channel.fluxer.channel import (
    TEXT_CHUNK_LIMIT,
    FluxerAccount,
    apply_account_config,
    build_account_snapshot,
    collect_status_issues,
    describe_account,
    format_allow_from,
    is_configured,
    looks_like_id,
    notify_approval,
    resolve_account,
    resolve_allow_from,
    resolve_dm_policy,
    send_media,
    send_text,
    start_account,
    validate_setup_input,
)
from fluxer_channel.fluxer.models import BotIdentity, ProbeResult, SendResult
from fluxer_channel.fluxer.session import RuntimeStatus


class _FakeOutbound:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send_message(
        self,
        target: str,
        text: str,
        *,
        reply_to: Optional[str] = None,
        media_url: Optional[str] = None,
    ) -> SendResult:
        self.sent.append(
            {"target": target, "text": text, "reply_to": reply_to, "media_url": media_url}
        )
        return SendResult(message_id="out-1", channel_id="c9")


def _cfg(**section: Any) -> dict[str, Any]:
    return {"channels": {"fluxer": section}}


def test_resolve_account_prefers_config_token() -> None:
    account = resolve_account(
        _cfg(token=" cfg-token ", name="Main"), env={"FLUXER_BOT_TOKEN": "env-token"}
    )

    assert account.account_id == "default"
    assert account.token == "cfg-token"
    assert account.token_source == "config"
    assert account.enabled is True
    assert account.name == "Main"
    assert is_configured(account)


def test_resolve_account_falls_back_to_env_then_none() -> None:
    from_env = resolve_account(_cfg(), env={"FLUXER_BOT_TOKEN": "env-token"})
    missing = resolve_account({}, env={})
    disabled = resolve_account(_cfg(enabled=False, token="t"), env={})

    assert from_env.token == "env-token"
    assert from_env.token_source == "env:FLUXER_BOT_TOKEN"
    assert missing.token is None
    assert missing.token_source == "none"
    assert not is_configured(missing)
    assert disabled.enabled is False


def test_describe_account() -> None:
    account = resolve_account(_cfg(token="t"), env={})

    assert describe_account(account) == {
        "accountId": "default",
        "name": None,
        "enabled": True,
        "configured": True,
        "tokenSource": "config",
    }


def test_allow_from_helpers() -> None:
    cfg = _cfg(dm={"allowFrom": ["  ABC ", 123, ""]})

    assert resolve_allow_from(cfg) == ["  ABC ", "123", ""]
    assert format_allow_from(resolve_allow_from(cfg)) == ["abc", "123"]
    assert resolve_allow_from(_cfg(dm={"allowFrom": "x"})) == []


def test_resolve_dm_policy_defaults_to_pairing() -> None:
    policy = resolve_dm_policy(resolve_account(_cfg(), env={}))

    assert policy["policy"] == "pairing"
    assert policy["allowFrom"] == []
    assert policy["allowFromPath"] == "channels.fluxer.dm.allowFrom"
    assert "pairing approve" in policy["approveHint"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("12345678901234567", True),
        ("fluxer:123456789012345678", True),
        ("channel:12345678901234567890", True),
        ("user:12345678901234567", True),
        ("1234567890123456", False),
        ("123456789012345678901", False),
        ("general", False),
    ],
)
def test_looks_like_id(raw: str, expected: bool) -> None:
    assert looks_like_id(raw) is expected


def test_validate_setup_input() -> None:
    assert validate_setup_input(token="abc") is None
    assert validate_setup_input(use_env=True) is None
    error = validate_setup_input(token="  ")
    assert error is not None and "FLUXER_BOT_TOKEN" in error


def test_apply_account_config_does_not_mutate_input() -> None:
    original = {"channels": {"fluxer": {"dm": {"policy": "open"}}}, "other": 1}

    updated = apply_account_config(original, token="new-token")
    env_only = apply_account_config({}, token="ignored", use_env=True)

    assert updated["channels"]["fluxer"] == {
        "dm": {"policy": "open"},
        "enabled": True,
        "token": "new-token",
    }
    assert "enabled" not in original["channels"]["fluxer"]
    assert env_only == {"channels": {"fluxer": {"enabled": True}}}


def test_collect_status_issues_reports_last_errors() -> None:
    issues = collect_status_issues(
        [
            {"accountId": "a", "lastError": "  gateway closed  "},
            {"accountId": "b", "lastError": None},
            {"accountId": "c", "lastError": "   "},
        ]
    )

    assert issues == [
        {
            "channel": "fluxer",
            "accountId": "a",
            "kind": "runtime",
            "message": "Channel error: gateway closed",
        }
    ]


def test_build_account_snapshot_merges_runtime_and_probe() -> None:
    account = resolve_account(_cfg(token="t"), env={})
    status = RuntimeStatus(account_id="default", running=True, last_start_at=10)
    probe = ProbeResult(ok=True, bot=BotIdentity(id="b1", username="fluxbot"), elapsed_ms=5)

    snapshot = build_account_snapshot(account, runtime=status, probe=probe)
    bare = build_account_snapshot(account)

    assert snapshot["running"] is True
    assert snapshot["lastStartAt"] == 10
    assert snapshot["bot"] == {"id": "b1", "username": "fluxbot"}
    assert snapshot["probe"]["elapsedMs"] == 5
    assert bare["running"] is False
    assert bare["probe"] is None


def test_text_chunk_limit() -> None:
    assert TEXT_CHUNK_LIMIT == 2000


@pytest.mark.anyio
async def test_send_text_and_media_normalize_targets() -> None:
    outbound = _FakeOutbound()

    text_result = await send_text(outbound, "fluxer:channel:c1", "hi", reply_to_id="m1")
    media_result = await send_media(outbound, "user:42", "pic", "https://cdn.test/a.png")

    assert text_result == {"channel": "fluxer", "messageId": "out-1", "channelId": "c9"}
    assert media_result["channel"] == "fluxer"
    assert outbound.sent == [
        {"target": "c1", "text": "hi", "reply_to": "m1", "media_url": None},
        {
            "target": "user:42",
            "text": "pic",
            "reply_to": None,
            "media_url": "https://cdn.test/a.png",
        },
    ]


@pytest.mark.anyio
async def test_notify_approval_messages_user() -> None:
    outbound = _FakeOutbound()

    await notify_approval(outbound, "fluxer:42")

    assert outbound.sent[0]["target"] == "user:42"
    assert "approved" in outbound.sent[0]["text"]


@pytest.mark.anyio
async def test_start_account_requires_token() -> None:
    account = FluxerAccount(
        account_id="default", enabled=True, token=None, token_source="none"
    )

    with pytest.raises(ConfigurationError):
        await start_account(
            account,
            host_config={},
            stop_event=asyncio.Event(),
            logger=logging.getLogger("test.channel"),
        )


@pytest.mark.anyio
async def test_start_account_probes_then_runs_session(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    probe_calls: list[tuple[str, int]] = []

    async def _fake_probe(token: str, timeout_ms: int = 0) -> ProbeResult:
        probe_calls.append((token, timeout_ms))
        return ProbeResult(ok=True, bot=BotIdentity(id="b1", username="fluxbot"))

    monkeypatch.setattr(channel_module, "probe_bot", _fake_probe)
    created: list[dict[str, Any]] = []
    runs: list[asyncio.Event] = []

    class _FakeSession:
        def __init__(self, **kwargs: Any) -> None:
            created.append(kwargs)

        async def run(self, stop_event: asyncio.Event) -> None:
            runs.append(stop_event)

    statuses: list[dict[str, Any]] = []
    stop_event = asyncio.Event()
    account = resolve_account(
        _cfg(token="tok", dm={"policy": "open"}, replyToMode="on"), env={}
    )

    await start_account(
        account,
        host_config={"agent": "main"},
        stop_event=stop_event,
        logger=logging.getLogger("test.channel"),
        runtime="runtime",
        on_status=statuses.append,
        session_factory=_FakeSession,
    )

    assert probe_calls == [("tok", 3000)]
    assert statuses == [{"accountId": "default", "bot": {"id": "b1", "username": "fluxbot"}}]
    assert created[0]["token"] == "tok"
    assert created[0]["config"].dm.policy == "open"
    assert created[0]["config"].reply_to_enabled is True
    assert created[0]["runtime"] == "runtime"
    assert runs == [stop_event]


@pytest.mark.anyio
async def test_start_account_ignores_probe_failure(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _fake_probe(token: str, timeout_ms: int = 0) -> ProbeResult:
        return ProbeResult(ok=False, error="timeout")

    monkeypatch.setattr(channel_module, "probe_bot", _fake_probe)
    runs: list[asyncio.Event] = []

    class _FakeSession:
        def __init__(self, **_kwargs: Any) -> None:
            return None

        async def run(self, stop_event: asyncio.Event) -> None:
            runs.append(stop_event)

    statuses: list[dict[str, Any]] = []
    await start_account(
        resolve_account(_cfg(token="tok"), env={}),
        host_config={},
        stop_event=asyncio.Event(),
        logger=logging.getLogger("test.channel"),
        on_status=statuses.append,
        session_factory=_FakeSession,
    )

    assert len(runs) == 1
    assert statuses == []

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional, Sequence

import pytest

from fluxer_channel.fluxer.config import FluxerChannelConfig
from fluxer_channel.fluxer.models import AccessDecision, InboundMessage, SessionIdentity
from fluxer_channel.fluxer.policy import (
    AccessPolicy,
    allowlist_allows,
    format_pairing_reply,
    strip_self_mention,
)
from fluxer_channel.fluxer.ports import PairingRequest

SELF = SessionIdentity(self_user_id="12345", self_username="fluxbot")

class _FakePairingStore:
    def __init__(self, allowed: Sequence[str] = ()) -> None:
        self.allowed = list(allowed)
        self.requests: dict[str, str] = {}
        self.read_calls = 0
        self.upserts: list[tuple[str, str, dict[str, Any]]] = []

    async def read_allowlist(self, channel: str) -> list[str]:
        self.read_calls += 1
        return list(self.allowed)

    async def upsert_pairing_request(
        self, channel: str, sender_id: str, meta: Mapping[str, Any]
    ) -> PairingRequest:
        self.upserts.append((channel, sender_id, dict(meta)))
        if sender_id in self.requests:
            return PairingRequest(code=self.requests[sender_id], created=False)
        code = f"CODE{len(self.requests) + 1}"
        self.requests[sender_id] = code
        return PairingRequest(code=code, created=True)

class _FailingPairingStore(_FakePairingStore):
    async def read_allowlist(self, channel: str) -> list[str]:
        raise RuntimeError("store offline")

class _FakeMentionMatcher:
    def __init__(self) -> None:
        self.build_calls = 0

    def build_patterns(self, config: Mapping[str, Any]) -> list[re.Pattern[str]]:
        self.build_calls += 1
        return [re.compile(r"\bfluxbot\b", re.IGNORECASE)]

    def matches(self, text: str, patterns: Sequence[re.Pattern[str]]) -> bool:
        return any(pattern.search(text) for pattern in patterns)

def _message(
    *,
    sender_id: str = "u1",
    text: str = "hello",
    is_direct: bool = True,
) -> InboundMessage:
    return InboundMessage(
        id="m1",
        conversation_id="c1",
        is_direct=is_direct,
        sender_id=sender_id,
        sender_name="alice",
        is_bot=False,
        text=text,
        timestamp=0,
    )

def _policy(
    raw: dict[str, Any],
    *,
    store: Optional[_FakePairingStore] = None,
    matcher: Optional[_FakeMentionMatcher] = None,
    replies: Optional[list[tuple[str, str]]] = None,
    identity: Optional[SessionIdentity] = SELF,
) -> AccessPolicy:
    sent = replies if replies is not None else []

    async def send_reply(conversation_id: str, text: str) -> None:
        sent.append((conversation_id, text))

    return AccessPolicy(
        FluxerChannelConfig.from_raw(raw),
        identity=lambda: identity,
        send_reply=send_reply,
        pairing_store=store,
        mention_matcher=matcher,
        logger=logging.getLogger("test.policy"),
    )

def test_allowlist_allows_wildcard_and_exact() -> None:
    assert allowlist_allows("u1", ["u1"])
    assert allowlist_allows("u1", ["*"])
    assert not allowlist_allows("u1", ["u2"])
    assert not allowlist_allows("u1", [])

def test_strip_self_mention() -> None:
    assert strip_self_mention("hello <@!12345> world", SELF) == "hello world"
    assert strip_self_mention("<@12345>   ping", SELF) == "ping"
    assert strip_self_mention("hello <@999> world", SELF) == "hello <@999> world"
    assert strip_self_mention(" keep ", None) == " keep "

def test_pairing_reply_carries_code() -> None:
    reply = format_pairing_reply("ABCD2345")
    assert "Pairing code: `ABCD2345`" in reply
    assert "approve fluxer <code>" in reply

@pytest.mark.anyio
async def test_allowlist_is_union_of_config_and_store() -> None:
    store = _FakePairingStore(allowed=["stored"])
    policy = _policy({"dm": {"policy": "allowlist", "allowFrom": ["configured"]}}, store=store)

    assert await policy.read_allowlist() == ["configured", "stored"]
    assert await policy.decide(_message(sender_id="configured")) is AccessDecision.ALLOWED
    assert await policy.decide(_message(sender_id="stored")) is AccessDecision.ALLOWED
    assert await policy.decide(_message(sender_id="other")) is AccessDecision.DENIED

@pytest.mark.anyio
async def test_store_failure_falls_back_to_config_allowlist() -> None:
    policy = _policy(
        {"dm": {"policy": "allowlist", "allowFrom": ["configured"]}},
        store=_FailingPairingStore(),
    )

    assert await policy.read_allowlist() == ["configured"]
    assert await policy.decide(_message(sender_id="configured")) is AccessDecision.ALLOWED

@pytest.mark.anyio
async def test_dm_open_and_disabled() -> None:
    store = _FakePairingStore()
    assert (
        await _policy({"dm": {"policy": "open"}}, store=store).decide(_message())
        is AccessDecision.ALLOWED
    )
    assert (
        await _policy({"dm": {"policy": "disabled"}}, store=store).decide(_message())
        is AccessDecision.DENIED
    )
    assert store.read_calls == 0

@pytest.mark.anyio
@pytest.mark.parametrize("policy_name", ["allowlist", "pairing"])
async def test_wildcard_applies_in_allowlist_and_pairing(policy_name: str) -> None:
    replies: list[tuple[str, str]] = []
    policy = _policy(
        {"dm": {"policy": policy_name, "allowFrom": ["*"]}},
        store=_FakePairingStore(),
        replies=replies,
    )

    assert await policy.decide(_message(sender_id="anyone")) is AccessDecision.ALLOWED
    assert replies == []

@pytest.mark.anyio
async def test_pairing_challenge_sends_one_reply_until_approved() -> None:
    store = _FakePairingStore()
    replies: list[tuple[str, str]] = []
    policy = _policy({"dm": {"policy": "pairing"}}, store=store, replies=replies)

    first = await policy.decide(_message(sender_id="stranger"))
    second = await policy.decide(_message(sender_id="stranger"))

    assert first is AccessDecision.CHALLENGE_ISSUED
    assert second is AccessDecision.CHALLENGE_ISSUED
    assert not first.allowed
    assert len(replies) == 1
    assert replies[0][0] == "c1"
    assert "CODE1" in replies[0][1]
    assert store.upserts[0] == ("fluxer", "stranger", {"name": "alice"})

    store.allowed.append("stranger")
    assert await policy.decide(_message(sender_id="stranger")) is AccessDecision.ALLOWED
    assert len(replies) == 1

@pytest.mark.anyio
async def test_undelivered_pairing_code_is_a_denial() -> None:
    store = _FakePairingStore()

    async def send_reply(_conversation_id: str, _text: str) -> None:
        raise RuntimeError("send failed")

    policy = AccessPolicy(
        FluxerChannelConfig.from_raw({"dm": {"policy": "pairing"}}),
        identity=lambda: SELF,
        send_reply=send_reply,
        pairing_store=store,
    )

    assert await policy.decide(_message()) is AccessDecision.DENIED
    # The request now exists, so the next message is a repeat challenge.
    assert await policy.decide(_message()) is AccessDecision.CHALLENGE_ISSUED
    assert len(store.upserts) == 2

@pytest.mark.anyio
async def test_pairing_without_store_denies_silently() -> None:
    replies: list[tuple[str, str]] = []
    policy = _policy({"dm": {"policy": "pairing"}}, replies=replies)

    assert await policy.decide(_message()) is AccessDecision.DENIED
    assert replies == []

@pytest.mark.anyio
async def test_pairing_store_upsert_failure_denies() -> None:
    class _RejectingStore(_FakePairingStore):
        async def upsert_pairing_request(
            self, channel: str, sender_id: str, meta: Mapping[str, Any]
        ) -> PairingRequest:
            raise RuntimeError("disk full")

    replies: list[tuple[str, str]] = []
    policy = _policy({"dm": {"policy": "pairing"}}, store=_RejectingStore(), replies=replies)

    assert await policy.decide(_message()) is AccessDecision.DENIED
    assert replies == []

@pytest.mark.anyio
async def test_group_requires_mention() -> None:
    policy = _policy({})

    assert (
        await policy.decide(_message(is_direct=False, text="no mention here"))
        is AccessDecision.DENIED
    )
    assert (
        await policy.decide(_message(is_direct=False, text="hey <@!12345> there"))
        is AccessDecision.ALLOWED
    )

@pytest.mark.anyio
async def test_group_mention_without_identity_uses_matcher() -> None:
    matcher = _FakeMentionMatcher()
    policy = _policy({}, matcher=matcher, identity=None)

    assert (
        await policy.decide(_message(is_direct=False, text="FluxBot help"))
        is AccessDecision.ALLOWED
    )
    assert (
        await policy.decide(_message(is_direct=False, text="<@12345> help"))
        is AccessDecision.DENIED
    )
    assert matcher.build_calls == 1

@pytest.mark.anyio
async def test_group_disabled_denies_mentions() -> None:
    policy = _policy({"groupPolicy": "disabled"})

    assert (
        await policy.decide(_message(is_direct=False, text="<@12345> hi"))
        is AccessDecision.DENIED
    )

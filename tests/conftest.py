from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from wechat_robot.runtime import AgentRoute, InboundContext


class FakePairing:
    def __init__(self, reply: Optional[str] = "pairing code: ABCD1234"):
        self.reply = reply
        self.built: List[Dict[str, Any]] = []
        self.upserts: List[Dict[str, Any]] = []

    def build_pairing_reply(self, **kwargs):
        self.built.append(kwargs)
        return self.reply

    def upsert_pairing_request(self, **kwargs):
        self.upserts.append(kwargs)


class FakeRouting:
    def resolve_agent_route(self, *, cfg, channel, account_id, peer_kind, peer_id):
        return AgentRoute(session_key=f"{channel}:{account_id}:{peer_kind}:{peer_id}", account_id=account_id)


class FakeReply:
    def __init__(self):
        self.contexts: List[InboundContext] = []
        self.dispatch_reply = AsyncMock(side_effect=self._dispatch)

    def format_inbound_envelope(self, *, body, **kwargs):
        return body

    def finalize_inbound_context(self, ctx):
        return ctx

    async def _dispatch(self, ctx, *, cfg, deliver, on_error):
        self.contexts.append(ctx)


class FakeActivity:
    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    def record(self, **kwargs):
        self.records.append(kwargs)


class FakeRuntime:
    def __init__(self, pairing_reply: Optional[str] = "pairing code: ABCD1234"):
        self.pairing = FakePairing(pairing_reply)
        self.routing = FakeRouting()
        self.reply = FakeReply()
        self.activity = FakeActivity()


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def wechat_cfg():
    return {
        "channels": {
            "wechat": {
                "base_url": "http://robot.local:9000",
                "api_token": "tok-base",
                "robot_id": 3,
                "dm_policy": "pairing",
                "allow_from": ["wxid_owner"],
                "polling": {"poll_contact_ids": ["wxid_alice"], "polling_interval_ms": 1000},
            }
        }
    }


@pytest.fixture(autouse=True)
def _clear_token_env(monkeypatch):
    monkeypatch.delenv("WECHAT_API_TOKEN", raising=False)

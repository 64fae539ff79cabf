from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from astrbot.api.message_components import Plain

from wechat_robot.astrbot_runtime import (
    PAIRING_CODE_LENGTH,
    AstrBotActivityService,
    AstrBotPairingService,
    AstrBotReplyService,
    AstrBotRoutingService,
)
from wechat_robot.runtime import InboundContext
from wechat_robot.wechat_channel import WeChatChannelPlugin
from wechat_robot.wechat_platform_adapter import WeChatRobotPlatformAdapter, build_wechat_section
from wechat_robot.wechat_send import WeChatSendResult


def _ctx(account_id="work", peer="wxid_alice"):
    return InboundContext(
        body="hello",
        raw_body="hello",
        command_body="hello",
        from_=f"wechat:{peer}",
        to=f"wechat:{peer}",
        session_key=f"wechat:{account_id}:direct:{peer}",
        account_id=account_id,
        chat_type="direct",
        conversation_label=peer,
        sender_name="Alice",
        sender_id=peer,
        message_sid="m1",
        timestamp=1700000000000,
        was_mentioned=False,
        command_authorized=False,
        trust_tier="guest",
        originating_to=f"wechat:{peer}",
    )


class TestPairingService:
    def test_reply_reuses_code_per_sender(self):
        pairing = AstrBotPairingService()
        first = pairing.build_pairing_reply(cfg={}, channel="wechat", sender_id="wxid_a", sender_name="Alice")
        second = pairing.build_pairing_reply(cfg={}, channel="wechat", sender_id="wxid_a", sender_name="Alice")
        assert first == second
        assert "wxid_a" in first

    def test_upsert_and_approve(self):
        pairing = AstrBotPairingService()
        pairing.build_pairing_reply(cfg={}, channel="wechat", sender_id="wxid_a", sender_name="Alice")
        pairing.upsert_pairing_request(
            channel="wechat", account_id="default", sender_id="wxid_a", sender_name="Alice", timestamp=1
        )
        pairing.upsert_pairing_request(
            channel="wechat", account_id="default", sender_id="wxid_a", sender_name=None, timestamp=5
        )

        requests = pairing.list_requests("wechat")
        assert len(requests) == 1
        request = requests[0]
        assert len(request.code) == PAIRING_CODE_LENGTH
        assert (request.created_at, request.last_seen_at) == (1, 5)
        assert request.sender_name == "Alice"

        assert pairing.approve("nope") is None
        approved = pairing.approve(request.code.lower())
        assert approved.sender_id == "wxid_a"
        assert pairing.list_requests() == []


class TestRoutingAndActivity:
    def test_session_key(self):
        route = AstrBotRoutingService().resolve_agent_route(
            cfg={}, channel="wechat", account_id="work", peer_kind="group", peer_id="1@chatroom"
        )
        assert route.session_key == "wechat:work:group:1@chatroom"
        assert route.account_id == "work"

    def test_activity(self):
        activity = AstrBotActivityService()
        assert activity.last("wechat", "default", "inbound") is None
        activity.record(channel="wechat", account_id="default", direction="inbound")
        assert activity.last("wechat", "default", "inbound") > 0


class TestPlatformSection:
    def test_flat_keys_to_section(self):
        section = build_wechat_section(
            {
                "id": "wechat_robot",
                "type": "wechat_robot",
                "enable": True,
                "base_url": "http://robot.local:9000",
                "api_token": "tok",
                "token_file": "",
                "group_policy": "",
                "allow_from": "wx:wxid_a, wxid_b,",
                "polling_interval_ms": 2000,
                "poll_contact_ids": "wxid_a,1@chatroom",
                "poll_all_contacts": False,
            }
        )
        assert section == {
            "base_url": "http://robot.local:9000",
            "api_token": "tok",
            "allow_from": ["wx:wxid_a", "wxid_b"],
            "polling": {
                "polling_interval_ms": 2000,
                "poll_contact_ids": ["wxid_a", "1@chatroom"],
                "poll_all_contacts": False,
            },
        }


class TestReplyDispatch:
    @pytest.fixture
    def multi_cfg(self, wechat_cfg):
        wechat_cfg["channels"]["wechat"]["accounts"] = {"work": {"robot_id": 9}}
        return wechat_cfg

    @pytest.mark.asyncio
    async def test_commits_event_for_account(self, multi_cfg):
        committed = []
        reply = AstrBotReplyService(platform_meta=MagicMock, commit_event=committed.append)
        on_error = MagicMock()
        with patch("wechat_robot.astrbot_runtime.WeChatRobotMessageEvent") as event_cls:
            await reply.dispatch_reply(_ctx(), cfg=multi_cfg, deliver=MagicMock(), on_error=on_error)

        on_error.assert_not_called()
        event = event_cls.return_value
        assert committed == [event]
        kwargs = event_cls.call_args.kwargs
        assert kwargs["account_id"] == "work"
        assert kwargs["cfg"] is multi_cfg
        assert kwargs["session_id"] == "wxid_alice"
        event.set_extra.assert_not_called()

    @pytest.mark.asyncio
    async def test_remembers_account_per_session(self, multi_cfg):
        reply = AstrBotReplyService(platform_meta=MagicMock, commit_event=lambda event: None)
        assert reply.account_for_session("wxid_alice") is None
        with patch("wechat_robot.astrbot_runtime.WeChatRobotMessageEvent"):
            await reply.dispatch_reply(_ctx(), cfg=multi_cfg, deliver=MagicMock(), on_error=MagicMock())
        assert reply.account_for_session("wxid_alice") == "work"
        assert reply.account_for_session("wxid_bob") is None


class TestSendBySession:
    def _adapter(self, cfg, session_account):
        adapter = WeChatRobotPlatformAdapter.__new__(WeChatRobotPlatformAdapter)
        adapter._cfg = cfg
        adapter.runtime = MagicMock()
        adapter.runtime.reply.account_for_session.return_value = session_account
        adapter.channel = WeChatChannelPlugin(adapter.runtime)
        return adapter

    @pytest.mark.asyncio
    @pytest.mark.parametrize("session_account, expected", [("work", "work"), (None, "default")])
    async def test_uses_account_that_received_the_session(self, wechat_cfg, session_account, expected):
        wechat_cfg["channels"]["wechat"]["accounts"] = {"default": {}, "work": {"robot_id": 9}}
        adapter = self._adapter(wechat_cfg, session_account)
        session = MagicMock(session_id="wxid_alice")
        with patch(
            "wechat_robot.wechat_platform_adapter.send_message_wechat",
            new_callable=AsyncMock,
            return_value=WeChatSendResult(ok=True),
        ) as send:
            await adapter.send_by_session(session, MagicMock(chain=[Plain(text="hi")]))

        adapter.runtime.reply.account_for_session.assert_called_once_with("wxid_alice")
        send.assert_awaited_once()
        assert send.await_args.args == ("wxid_alice", "hi")
        assert send.await_args.kwargs["account_id"] == expected

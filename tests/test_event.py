from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from astrbot.api.message_components import Plain, Record

from wechat_robot.wechat_event import WeChatRobotMessageEvent
from wechat_robot.wechat_send import WeChatSendResult


def _event(cfg, deliver):
    event = WeChatRobotMessageEvent.__new__(WeChatRobotMessageEvent)
    event._deliver = deliver
    event._cfg = cfg
    event._account_id = "work"
    event._text_chunk_limit = 5
    return event


@pytest.fixture(autouse=True)
def _no_host_send():
    with patch.object(WeChatRobotMessageEvent, "session_id", "wxid_alice", create=True), patch(
        "wechat_robot.wechat_event.AstrMessageEvent.send", new_callable=AsyncMock
    ):
        yield


class TestEventSend:
    @pytest.mark.asyncio
    async def test_text_is_chunked_through_deliver(self, wechat_cfg):
        deliver = AsyncMock()
        event = _event(wechat_cfg, deliver)
        await event.send(MagicMock(chain=[Plain(text="abcdefgh")]))
        assert [c.args[0]["text"] for c in deliver.await_args_list] == ["abcde", "fgh"]

    @pytest.mark.asyncio
    async def test_record_goes_through_capped_send(self, wechat_cfg):
        deliver = AsyncMock()
        event = _event(wechat_cfg, deliver)
        record = MagicMock(spec=Record)
        record.convert_to_file_path = AsyncMock(return_value="/tmp/voice.mp3")
        with patch(
            "wechat_robot.wechat_event.send_message_wechat",
            new_callable=AsyncMock,
            return_value=WeChatSendResult(ok=False, error="Voice file too large"),
        ) as send:
            await event.send(MagicMock(chain=[record]))

        deliver.assert_not_awaited()
        send.assert_awaited_once()
        assert send.await_args.args == ("wxid_alice", "")
        kwargs = send.await_args.kwargs
        assert kwargs["voice_file_path"] == "/tmp/voice.mp3"
        assert kwargs["account_id"] == "work"
        assert kwargs["cfg"] is wechat_cfg

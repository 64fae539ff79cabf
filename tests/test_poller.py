import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from wechat_robot.wechat_poller import SEEN_EVICT_COUNT, SEEN_HIGH_WATER, WeChatMessagePoller
from wechat_robot.wechat_types import WeChatPollingConfig


def _item(msg_id, created_at, **overrides):
    item = {
        "msg_id": msg_id,
        "created_at": created_at,
        "type": 1,
        "content": f"m{msg_id}",
        "sender_wxid": "wxid_alice",
        "sender_nickname": "Alice",
        "to_wxid": "wxid_bot",
        "message_source": "user",
        "is_chat_room": False,
        "is_recalled": False,
    }
    item.update(overrides)
    return item


def _page(items):
    return {"code": 200, "data": {"items": items}}


def _fake_client(pages=None):
    client = MagicMock()
    client.get_robot_info = AsyncMock(return_value={"code": 200, "data": {"wechat_id": "wxid_bot", "nickname": "Bot"}})
    client.get_contact_list = AsyncMock(return_value={"code": 200, "data": []})
    client.get_chat_room_list = AsyncMock(return_value={"code": 200, "data": []})
    client.get_chat_history = AsyncMock(side_effect=list(pages or []))
    return client


def _make_poller(client, received, contact_ids=("wxid_alice",), abort_event=None, **config):
    async def on_message(msg):
        received.append(msg)

    polling = WeChatPollingConfig(poll_contact_ids=list(contact_ids), **config)
    return WeChatMessagePoller(
        base_url="http://robot.local",
        api_token="tok",
        robot_id=1,
        account_id="default",
        on_message=on_message,
        polling_config=polling,
        abort_event=abort_event,
        client=client,
    )


class TestPollContact:
    @pytest.mark.asyncio
    async def test_delivers_only_newer_than_cursor_oldest_first(self):
        client = _fake_client(
            [
                _page([_item(80, 80), _item(70, 70), _item(60, 60)]),
                _page([_item(100, 100), _item(90, 90), _item(80, 80), _item(70, 70), _item(60, 60)]),
            ]
        )
        received = []
        poller = _make_poller(client, received)

        await poller.poll_once()
        assert [m.msg_id for m in received] == [60, 70, 80]
        assert poller.cursor_for("wxid_alice") == 80

        received.clear()
        await poller.poll_once()
        assert [m.msg_id for m in received] == [90, 100]
        assert poller.cursor_for("wxid_alice") == 100

    @pytest.mark.asyncio
    async def test_same_page_twice_delivers_once(self):
        page = _page([_item(2, 20), _item(1, 10)])
        client = _fake_client([page, page])
        received = []
        poller = _make_poller(client, received)

        await poller.poll_once()
        await poller.poll_once()
        assert [m.msg_id for m in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_cursor_never_moves_back(self):
        client = _fake_client([_page([_item(1, 100)]), _page([_item(2, 50)])])
        received = []
        poller = _make_poller(client, received)

        await poller.poll_once()
        await poller.poll_once()
        assert [m.msg_id for m in received] == [1]
        assert poller.cursor_for("wxid_alice") == 100

    @pytest.mark.asyncio
    async def test_empty_page_keeps_cursor(self):
        client = _fake_client([_page([_item(1, 100)]), _page([])])
        poller = _make_poller(client, [])
        await poller.poll_once()
        await poller.poll_once()
        assert poller.cursor_for("wxid_alice") == 100

    @pytest.mark.asyncio
    async def test_skips_robot_recalled_and_non_text(self):
        client = _fake_client(
            [
                _page(
                    [
                        _item(5, 50),
                        _item(4, 40, type=3),
                        _item(3, 30, is_recalled=True),
                        _item(2, 20, message_source="robot"),
                        _item(1, 10),
                    ]
                )
            ]
        )
        received = []
        poller = _make_poller(client, received)
        await poller.poll_once()
        assert [m.msg_id for m in received] == [1, 5]
        # 被过滤的消息也记入已见集合
        assert poller.seen_count == 5
        assert poller.cursor_for("wxid_alice") == 50

    @pytest.mark.asyncio
    async def test_seen_set_eviction(self):
        items = [_item(i, 0) for i in range(SEEN_HIGH_WATER + 1)]
        client = _fake_client([_page(items)])
        received = []
        poller = _make_poller(client, received)
        await poller.poll_once()
        assert received == []
        assert poller.seen_count == SEEN_HIGH_WATER + 1 - SEEN_EVICT_COUNT

    @pytest.mark.asyncio
    async def test_group_message_conversion(self):
        room = "123@chatroom"
        client = _fake_client([_page([_item(1, 10, is_chat_room=True, is_atme=True, sender_wxid="wxid_bob")])])
        received = []
        poller = _make_poller(client, received, contact_ids=(room,))
        await poller.poll_once()

        msg = received[0]
        assert msg.id == f"{room}:1"
        assert msg.chat_type == "group"
        assert msg.from_wxid == room
        assert msg.sender_wxid == "wxid_bob"
        assert msg.reply_target == room
        assert msg.is_at_me is True
        assert msg.timestamp == 10000

    @pytest.mark.asyncio
    async def test_direct_message_conversion(self):
        client = _fake_client([_page([_item(1, 10, content="", display_full_content="hi there")])])
        received = []
        poller = _make_poller(client, received)
        await poller.poll_once()

        msg = received[0]
        assert msg.chat_type == "direct"
        assert msg.from_wxid == "wxid_alice"
        assert msg.reply_target == "wxid_alice"
        assert msg.body == "hi there"
        assert msg.is_at_me is False

    @pytest.mark.asyncio
    async def test_at_marker_in_display_content(self):
        room = "9@chatroom"
        item = _item(1, 10, is_chat_room=True, display_full_content="Bob在群聊中@了你")
        client = _fake_client([_page([item])])
        received = []
        poller = _make_poller(client, received, contact_ids=(room,))
        await poller.poll_once()
        assert received[0].is_at_me is True

    @pytest.mark.asyncio
    async def test_contact_failure_does_not_stop_round(self):
        async def history(*, contact_id, **kwargs):
            if contact_id == "wxid_broken":
                raise RuntimeError("boom")
            return _page([_item(1, 10, sender_wxid=contact_id)])

        client = _fake_client()
        client.get_chat_history = AsyncMock(side_effect=history)
        received = []
        poller = _make_poller(client, received, contact_ids=("wxid_broken", "wxid_alice"))
        await poller.poll_once()
        assert [m.chat_id for m in received] == ["wxid_alice"]


class TestContactResolution:
    @pytest.mark.asyncio
    async def test_nothing_configured_polls_nothing(self):
        client = _fake_client()
        poller = _make_poller(client, [], contact_ids=())
        await poller.poll_once()
        client.get_chat_history.assert_not_called()
        client.get_contact_list.assert_not_called()

    @pytest.mark.asyncio
    async def test_poll_all_respects_limit(self):
        client = _fake_client()
        client.get_contact_list = AsyncMock(
            return_value={"code": 200, "data": [{"wechat_id": "wxid_a"}, {"wechat_id": "wxid_b"}]}
        )
        client.get_chat_room_list = AsyncMock(
            return_value={"code": 200, "data": [{"wechat_id": f"{i}@chatroom"} for i in range(5)]}
        )
        client.get_chat_history = AsyncMock(return_value=_page([]))
        poller = _make_poller(client, [], contact_ids=(), poll_all_contacts=True, max_poll_contacts=3)
        await poller.poll_once()

        polled = [c.kwargs["contact_id"] for c in client.get_chat_history.call_args_list]
        assert polled == ["wxid_a", "wxid_b", "0@chatroom"]

    @pytest.mark.asyncio
    async def test_poll_all_friends_fill_limit(self):
        client = _fake_client()
        client.get_contact_list = AsyncMock(
            return_value={"code": 200, "data": [{"wechat_id": "wxid_a"}, {"wechat_id": "wxid_b"}]}
        )
        client.get_chat_history = AsyncMock(return_value=_page([]))
        poller = _make_poller(client, [], contact_ids=(), poll_all_contacts=True, max_poll_contacts=2)
        await poller.poll_once()
        client.get_chat_room_list.assert_not_called()

    @pytest.mark.asyncio
    async def test_contact_list_failure_is_soft(self):
        client = _fake_client()
        client.get_contact_list = AsyncMock(side_effect=RuntimeError("down"))
        poller = _make_poller(client, [], contact_ids=(), poll_all_contacts=True)
        await poller.poll_once()
        client.get_chat_history.assert_not_called()

    @pytest.mark.asyncio
    async def test_room_list_failure_keeps_friends(self):
        client = _fake_client()
        client.get_contact_list = AsyncMock(return_value={"code": 200, "data": [{"wechat_id": "wxid_a"}]})
        client.get_chat_room_list = AsyncMock(side_effect=RuntimeError("down"))
        client.get_chat_history = AsyncMock(return_value=_page([]))
        poller = _make_poller(client, [], contact_ids=(), poll_all_contacts=True)
        await poller.poll_once()
        assert [c.kwargs["contact_id"] for c in client.get_chat_history.call_args_list] == ["wxid_a"]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_with_abort_already_set(self):
        client = _fake_client()
        abort = asyncio.Event()
        abort.set()
        poller = _make_poller(client, [], abort_event=abort)
        await poller.start()
        assert poller.is_running is False
        client.get_robot_info.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_seeds_cursor_and_filters_self(self):
        future = int(time.time()) + 100
        client = _fake_client(
            [
                _page(
                    [
                        _item(3, future + 2, content="hey @Bot", is_chat_room=True),
                        _item(2, future + 1, sender_wxid="wxid_bot"),
                        _item(1, 10),
                    ]
                )
            ]
        )
        received = []
        poller = _make_poller(client, received, polling_interval_ms=60000)
        await poller.start()
        try:
            assert poller.is_running is True
            assert poller.cursor_for("wxid_alice") >= future - 200
            await poller.poll_once()
        finally:
            poller.stop()
            await poller.wait_stopped()

        assert [m.msg_id for m in received] == [3]
        assert received[0].is_at_me is True
        assert poller.is_running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        client = _fake_client()
        poller = _make_poller(client, [], polling_interval_ms=60000)
        await poller.start()
        await poller.start()
        poller.stop()
        await poller.wait_stopped()
        assert client.get_robot_info.await_count == 1

    @pytest.mark.asyncio
    async def test_loop_delivers_and_abort_stops(self):
        future = int(time.time()) + 100
        delivered = asyncio.Event()
        client = _fake_client()
        client.get_chat_history = AsyncMock(return_value=_page([_item(1, future)]))

        async def on_message(msg):
            delivered.set()

        abort = asyncio.Event()
        poller = WeChatMessagePoller(
            base_url="http://robot.local",
            api_token="tok",
            robot_id=1,
            account_id="default",
            on_message=on_message,
            polling_config=WeChatPollingConfig(poll_contact_ids=["wxid_alice"], polling_interval_ms=10),
            abort_event=abort,
            client=client,
        )
        await poller.start()
        await asyncio.wait_for(delivered.wait(), timeout=2)

        abort.set()
        await asyncio.wait_for(poller.wait_stopped(), timeout=2)
        assert poller.is_running is False


class TestSeenEvictionOrder:
    @pytest.mark.asyncio
    async def test_oldest_keys_evicted_first(self):
        items = [_item(i, 0) for i in range(SEEN_HIGH_WATER + 1)]
        replay = _page([_item(9000, 50), _item(0, 50)])
        client = _fake_client([_page(items), replay])
        received = []
        poller = _make_poller(client, received)

        await poller.poll_once()
        await poller.poll_once()
        # 0 属于最早插入的 5000 个，已被淘汰；9000 仍在集合中
        assert [m.msg_id for m in received] == [0]


class TestLoopErrors:
    def _poller(self, client, on_error):
        async def on_message(msg):
            pass

        return WeChatMessagePoller(
            base_url="http://robot.local",
            api_token="tok",
            robot_id=1,
            account_id="default",
            on_message=on_message,
            polling_config=WeChatPollingConfig(poll_contact_ids=["wxid_alice"], polling_interval_ms=10),
            on_error=on_error,
            client=client,
        )

    @pytest.mark.asyncio
    async def test_cycle_error_goes_to_on_error(self):
        errors = []
        reported = asyncio.Event()

        def on_error(err):
            errors.append(err)
            reported.set()

        poller = self._poller(_fake_client(), on_error)
        poller.poll_once = AsyncMock(side_effect=RuntimeError("cycle failed"))
        await poller.start()
        try:
            await asyncio.wait_for(reported.wait(), timeout=2)
            assert poller.is_running is True
        finally:
            poller.stop()
            await poller.wait_stopped()
        assert str(errors[0]) == "cycle failed"

    @pytest.mark.asyncio
    async def test_raising_on_error_ends_loop(self):
        def on_error(err):
            raise ValueError("handler broke")

        poller = self._poller(_fake_client(), on_error)
        poller.poll_once = AsyncMock(side_effect=RuntimeError("cycle failed"))
        await poller.start()
        await asyncio.wait_for(poller.wait_stopped(), timeout=2)

        assert poller.is_running is False
        assert poller.poll_once.await_count == 1


class TestRestart:
    @pytest.mark.asyncio
    async def test_stop_then_start_runs_single_loop(self):
        in_flight = 0
        max_in_flight = 0

        async def history(**kwargs):
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return _page([])

        client = _fake_client()
        client.get_chat_history = AsyncMock(side_effect=history)
        poller = _make_poller(client, [], polling_interval_ms=20)

        await poller.start()
        await asyncio.sleep(0.03)
        poller.stop()
        await poller.start()
        await asyncio.sleep(0.3)
        poller.stop()
        await poller.wait_stopped()

        assert client.get_chat_history.await_count > 2
        assert max_in_flight == 1

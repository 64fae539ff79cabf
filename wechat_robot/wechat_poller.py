"""
微信消息轮询器

后端只提供按联系人分页的聊天记录接口（/api/v1/chat/history），这里用
"每联系人时间游标 + 已见消息集合" 在其上模拟推送式的入站消息流：

- 启动时把每个联系人的游标设为当前时间，避免重启后重放历史消息
- 每轮依次拉取每个联系人的最新一页，去重、过滤后按时间正序回调
- 单个联系人失败只记录日志，不影响本轮其他联系人
- 已见集合超过上限时按插入顺序淘汰最旧的一半（近似 LRU）

游标与已见集合只存在于内存中，随轮询器实例销毁。
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from astrbot import logger

from .wechat_client import WeChatRobotClient
from .wechat_types import (
    CHATROOM_SUFFIX,
    MSG_TYPE_TEXT,
    WeChatInboundMessage,
    WeChatPollingConfig,
)

DEFAULT_POLLING_INTERVAL_MS = 3000
DEFAULT_MAX_POLL_CONTACTS = 50
HISTORY_PAGE_SIZE = 20
SEEN_HIGH_WATER = 10000
SEEN_EVICT_COUNT = 5000
# display_full_content 中的系统提示，例如 "xxx在群聊中@了你"
AT_ME_MARKER = "@了你"

MessageCallback = Callable[[WeChatInboundMessage], Awaitable[None]]
ErrorCallback = Callable[[Exception], Any]


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _preview(text: str, limit: int = 50) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class WeChatMessagePoller:
    def __init__(
        self,
        *,
        base_url: str,
        api_token: str,
        robot_id: int,
        account_id: str,
        on_message: MessageCallback,
        polling_config: Optional[WeChatPollingConfig] = None,
        on_error: Optional[ErrorCallback] = None,
        abort_event: Optional[asyncio.Event] = None,
        client: Optional[WeChatRobotClient] = None,
    ) -> None:
        self.account_id = account_id
        self._polling_config = polling_config or WeChatPollingConfig()
        self._on_message = on_message
        self._on_error = on_error
        self._abort_event = abort_event
        self._client = client or WeChatRobotClient(
            base_url=base_url,
            api_token=api_token,
            robot_id=robot_id,
        )

        self._running = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        # 每次 start 递增，旧循环发现代数过期后退出
        self._generation = 0
        self._abort_watcher: Optional[asyncio.Task] = None

        # contact_id -> 最后处理的消息时间（秒）
        self._cursors: Dict[str, int] = {}
        # 已投递的消息 key（contact_id:msg_id），_seen_order 记录插入顺序用于淘汰
        self._seen_ids: Set[str] = set()
        self._seen_order: Deque[str] = deque()

        self._robot_wxid: Optional[str] = None
        self._robot_nickname: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def seen_count(self) -> int:
        return len(self._seen_ids)

    @property
    def interval_ms(self) -> int:
        interval = self._polling_config.polling_interval_ms
        return DEFAULT_POLLING_INTERVAL_MS if interval is None else int(interval)

    def cursor_for(self, contact_id: str) -> Optional[int]:
        return self._cursors.get(contact_id)

    def _aborted(self) -> bool:
        return self._abort_event is not None and self._abort_event.is_set()

    async def start(self) -> None:
        if self._running:
            return
        self._generation += 1
        previous = self._task
        if previous is not None and not previous.done():
            # 等旧循环退出后再启动，避免两轮轮询重叠
            await asyncio.wait({previous})
        self._running = True
        self._stop_event.clear()
        logger.info(f"[wechat-poller] 轮询已启动 account={self.account_id}")

        if self._abort_event is not None:
            if self._abort_event.is_set():
                self.stop()
                return
            self._abort_watcher = asyncio.create_task(self._watch_abort())

        await self._load_robot_identity()

        # 游标初始化为当前时间，跳过启动前的历史消息
        now = int(time.time())
        for contact_id in await self._resolve_contact_ids():
            self._cursors[contact_id] = max(self._cursors.get(contact_id, 0), now)

        if not self._running:
            return
        self._task = asyncio.create_task(self._run_loop(self._generation))
        self._task.add_done_callback(self._on_loop_done)

    def stop(self) -> None:
        if self._running:
            logger.info(f"[wechat-poller] 轮询已停止 account={self.account_id}")
        self._running = False
        self._stop_event.set()

        watcher = self._abort_watcher
        self._abort_watcher = None
        if watcher is not None and not watcher.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if watcher is not current:
                watcher.cancel()

    async def wait_stopped(self) -> None:
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _watch_abort(self) -> None:
        assert self._abort_event is not None
        await self._abort_event.wait()
        logger.info(f"[wechat-poller] 收到中止信号，停止轮询 account={self.account_id}")
        self.stop()

    async def _load_robot_identity(self) -> None:
        try:
            resp = await self._client.get_robot_info()
        except Exception as e:
            # 获取失败只影响自身消息过滤和昵称 @ 检测
            logger.warning(f"[wechat-poller] get robot info failed: {e}")
            return
        data = resp.get("data") or {}
        self._robot_wxid = data.get("wechat_id") or None
        self._robot_nickname = data.get("nickname") or None
        if self._robot_nickname:
            logger.info(f"[wechat-poller] 机器人昵称: {self._robot_nickname}")

    async def _run_loop(self, generation: int) -> None:
        # 只在上一轮完全结束后才开始计时下一轮，保证轮询不会重叠
        interval_sec = max(self.interval_ms, 0) / 1000
        while self._running and generation == self._generation:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_sec)
            except asyncio.TimeoutError:
                pass
            if not self._running or generation != self._generation:
                break
            if self._aborted():
                self.stop()
                break

            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"[wechat-poller] 轮询异常 account={self.account_id}: {e}")
                if self._on_error is not None:
                    self._on_error(e)

    def _on_loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._running = False
            return
        exc = task.exception()
        if exc is not None:
            self._running = False
            logger.error(f"[wechat-poller] 轮询任务异常退出 account={self.account_id}: {exc}")

    async def _resolve_contact_ids(self) -> List[str]:
        config = self._polling_config
        if config.poll_contact_ids:
            return list(config.poll_contact_ids)
        if not config.poll_all_contacts:
            return []

        max_contacts = config.max_poll_contacts
        if max_contacts is None:
            max_contacts = DEFAULT_MAX_POLL_CONTACTS
        contact_ids: List[str] = []
        try:
            friends = await self._client.get_contact_list("friend")
            for contact in friends.get("data") or []:
                if len(contact_ids) >= max_contacts:
                    break
                contact_ids.append(contact["wechat_id"])

            if len(contact_ids) < max_contacts:
                rooms = await self._client.get_chat_room_list()
                for room in rooms.get("data") or []:
                    if len(contact_ids) >= max_contacts:
                        break
                    contact_ids.append(room["wechat_id"])
        except Exception as e:
            logger.warning(f"[wechat-poller] list contacts failed, using {len(contact_ids)} collected: {e}")
        return contact_ids

    def _remember(self, key: str) -> None:
        self._seen_ids.add(key)
        self._seen_order.append(key)

    def _evict_seen(self) -> None:
        if len(self._seen_ids) <= SEEN_HIGH_WATER:
            return
        for _ in range(min(SEEN_EVICT_COUNT, len(self._seen_order))):
            self._seen_ids.discard(self._seen_order.popleft())
        logger.debug(f"[wechat-poller] seen set trimmed to {len(self._seen_ids)}")

    async def poll_once(self) -> None:
        """执行一轮轮询：依次处理每个联系人，回调按联系人顺序串行执行。"""
        contact_ids = await self._resolve_contact_ids()
        if not contact_ids:
            return

        for contact_id in contact_ids:
            if self._stop_event.is_set() or self._aborted():
                break
            try:
                await self._poll_contact(contact_id)
            except Exception as e:
                logger.error(f"[wechat-poller] 轮询错误 contact={contact_id}: {e}")

        self._evict_seen()

    async def _poll_contact(self, contact_id: str) -> None:
        resp = await self._client.get_chat_history(
            contact_id=contact_id,
            page_index=1,
            page_size=HISTORY_PAGE_SIZE,
        )
        items = (resp.get("data") or {}).get("items") or []
        last_ts = self._cursors.get(contact_id, 0)

        # 响应最新在前：先去重（立即记入已见集合）再按游标过滤
        fresh: List[Dict[str, Any]] = []
        for item in items:
            key = f"{contact_id}:{item.get('msg_id')}"
            if key in self._seen_ids:
                continue
            self._remember(key)
            if _as_int(item.get("created_at")) <= last_ts:
                continue
            fresh.append(item)
        fresh.reverse()

        for item in fresh:
            if item.get("message_source") == "robot":
                continue
            if self._robot_wxid and item.get("sender_wxid") == self._robot_wxid:
                continue
            if item.get("is_recalled"):
                continue
            # 暂时只处理文本消息
            if item.get("type") != MSG_TYPE_TEXT:
                continue

            msg = self.convert_to_inbound_message(item, contact_id)
            sender = msg.sender_nickname or msg.sender_wxid
            at_flag = " [@]" if msg.is_at_me else ""
            logger.info(f"[wechat-poller] 收到消息 {sender}{at_flag}: {_preview(msg.body)}")
            await self._on_message(msg)

        if items:
            max_ts = max(_as_int(item.get("created_at")) for item in items)
            # 游标只前进不后退
            self._cursors[contact_id] = max(max_ts, last_ts)

    def convert_to_inbound_message(self, item: Dict[str, Any], contact_id: str) -> WeChatInboundMessage:
        is_chat_room = bool(item.get("is_chat_room")) or contact_id.endswith(CHATROOM_SUFFIX)
        content = item.get("content") or ""
        display_content = item.get("display_full_content") or ""

        # @ 检测：接口 is_atme -> 系统提示文案 -> 正文包含 @机器人昵称
        is_at_me = bool(item.get("is_atme"))
        if not is_at_me and AT_ME_MARKER in display_content:
            is_at_me = True
        if not is_at_me and self._robot_nickname and content:
            is_at_me = f"@{self._robot_nickname}" in content

        if is_chat_room:
            logger.debug(
                f"[wechat-poller] @检测: api.is_atme={item.get('is_atme')} "
                f"nickname={self._robot_nickname} content={content[:30]!r} -> {is_at_me}",
            )

        msg_id = item.get("msg_id")
        sender_wxid = item.get("sender_wxid") or ""
        return WeChatInboundMessage(
            id=f"{contact_id}:{msg_id}",
            msg_id=_as_int(msg_id),
            from_wxid=contact_id if is_chat_room else sender_wxid,
            sender_wxid=sender_wxid,
            sender_nickname=item.get("sender_nickname") or None,
            to_wxid=item.get("to_wxid") or "",
            body=content or display_content,
            timestamp=_as_int(item.get("created_at")) * 1000,
            chat_type="group" if is_chat_room else "direct",
            chat_id=contact_id,
            is_at_me=is_at_me,
            is_recalled=bool(item.get("is_recalled")),
            message_type=_as_int(item.get("type")),
            attachment_url=item.get("attachment_url") or None,
        )


def create_wechat_poller(**kwargs: Any) -> WeChatMessagePoller:
    return WeChatMessagePoller(**kwargs)

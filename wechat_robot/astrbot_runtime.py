"""
宿主运行时的 AstrBot 实现

- 配对：内存中的待审核请求表（重启后清空）
- 路由：会话键 wechat:{account}:{dm|group}:{peer}
- 回复：把入站上下文包装成 AstrBotMessage + WeChatRobotMessageEvent 提交给 AstrBot 事件队列，
  由 AstrBot 的流水线生成回复，再经 event.send -> deliver 回到微信
- 活动：记录每个账户最近一次收/发时间
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from astrbot import logger
from astrbot.api.message_components import At, Plain
from astrbot.api.platform import AstrBotMessage, MessageMember, MessageType, PlatformMetadata

from .runtime import AgentRoute, DeliverCallback, InboundContext, PeerKind, ReplyErrorCallback
from .wechat_accounts import resolve_wechat_account
from .wechat_event import WeChatRobotMessageEvent
from .wechat_channel import DEFAULT_TEXT_CHUNK_LIMIT, WeChatChannelPlugin

PAIRING_CODE_LENGTH = 8
_PAIRING_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PairingRequest:
    channel: str
    account_id: str
    sender_id: str
    code: str
    sender_name: Optional[str] = None
    created_at: int = 0
    last_seen_at: int = 0


class AstrBotPairingService:
    """按 (channel, sender_id) 保存待审核请求，同一发送者复用同一个配对码。"""

    def __init__(self) -> None:
        self._codes: Dict[Tuple[str, str], str] = {}
        self._requests: Dict[Tuple[str, str], PairingRequest] = {}

    def _code_for(self, channel: str, sender_id: str) -> str:
        key = (channel, sender_id)
        code = self._codes.get(key)
        if not code:
            code = "".join(secrets.choice(_PAIRING_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))
            self._codes[key] = code
        return code

    def build_pairing_reply(
        self,
        *,
        cfg: Dict[str, Any],
        channel: str,
        sender_id: str,
        sender_name: str,
    ) -> Optional[str]:
        code = self._code_for(channel, sender_id)
        return (
            f"你好 {sender_name}，机器人目前只回复已授权的联系人。\n"
            f"你的微信 ID：{sender_id}\n"
            f"配对码：{code}\n"
            "请把配对码发给机器人管理员完成授权。"
        )

    def upsert_pairing_request(
        self,
        *,
        channel: str,
        account_id: str,
        sender_id: str,
        sender_name: Optional[str],
        timestamp: int,
    ) -> None:
        key = (channel, sender_id)
        existing = self._requests.get(key)
        if existing is not None:
            existing.last_seen_at = timestamp
            existing.account_id = account_id
            if sender_name:
                existing.sender_name = sender_name
            return
        self._requests[key] = PairingRequest(
            channel=channel,
            account_id=account_id,
            sender_id=sender_id,
            code=self._code_for(channel, sender_id),
            sender_name=sender_name,
            created_at=timestamp,
            last_seen_at=timestamp,
        )

    def list_requests(self, channel: Optional[str] = None) -> List[PairingRequest]:
        return [r for r in self._requests.values() if channel is None or r.channel == channel]

    def approve(self, code: str) -> Optional[PairingRequest]:
        """按配对码取出请求并移除；加入白名单由调用方负责。"""
        wanted = (code or "").strip().upper()
        for key, request in list(self._requests.items()):
            if request.code == wanted:
                self._requests.pop(key, None)
                self._codes.pop(key, None)
                return request
        return None


class AstrBotRoutingService:
    def resolve_agent_route(
        self,
        *,
        cfg: Dict[str, Any],
        channel: str,
        account_id: str,
        peer_kind: PeerKind,
        peer_id: str,
    ) -> AgentRoute:
        return AgentRoute(session_key=f"{channel}:{account_id}:{peer_kind}:{peer_id}", account_id=account_id)


class AstrBotActivityService:
    def __init__(self) -> None:
        self.last_seen: Dict[Tuple[str, str, str], int] = {}

    def record(self, *, channel: str, account_id: str, direction: str) -> None:
        self.last_seen[(channel, account_id, direction)] = _now_ms()

    def last(self, channel: str, account_id: str, direction: str) -> Optional[int]:
        return self.last_seen.get((channel, account_id, direction))


class AstrBotReplyService:
    def __init__(
        self,
        platform_meta: Callable[[], PlatformMetadata],
        commit_event: Callable[[WeChatRobotMessageEvent], None],
    ) -> None:
        self._platform_meta = platform_meta
        self._commit_event = commit_event
        # AstrBot 会话 ID（wxid / 群 ID）-> 最近一次收到该会话消息的账户
        self._session_accounts: Dict[str, str] = {}

    def account_for_session(self, session_id: str) -> Optional[str]:
        return self._session_accounts.get(session_id)

    def format_inbound_envelope(
        self,
        *,
        cfg: Dict[str, Any],
        channel: str,
        from_label: str,
        timestamp: int,
        body: str,
        chat_type: str,
        sender_name: str,
        sender_id: str,
    ) -> str:
        # AstrBot 通过 AstrBotMessage.sender 携带发送者信息，这里保持正文原样，
        # 否则指令前缀（例如 /help）会失效
        return body

    def finalize_inbound_context(self, ctx: InboundContext) -> Optional[InboundContext]:
        if not ctx.command_body.strip():
            return None
        return ctx

    def build_message(self, ctx: InboundContext, self_id: str) -> AstrBotMessage:
        is_group = ctx.chat_type == "group"
        session_id = WeChatChannelPlugin.normalize_target(ctx.originating_to) or ctx.sender_id

        abm = AstrBotMessage()
        abm.type = MessageType.GROUP_MESSAGE if is_group else MessageType.FRIEND_MESSAGE
        if is_group and ctx.group_subject:
            abm.group_id = ctx.group_subject
        abm.message_str = ctx.command_body
        abm.sender = MessageMember(user_id=ctx.sender_id, nickname=ctx.sender_name)
        if is_group and ctx.was_mentioned:
            abm.message = [At(qq=self_id), Plain(text=ctx.command_body)]
        else:
            abm.message = [Plain(text=ctx.command_body)]
        abm.raw_message = ctx
        abm.self_id = self_id
        abm.session_id = session_id
        abm.message_id = ctx.message_sid
        abm.timestamp = int(ctx.timestamp / 1000) if ctx.timestamp else int(time.time())
        return abm

    async def dispatch_reply(
        self,
        ctx: InboundContext,
        *,
        cfg: Dict[str, Any],
        deliver: DeliverCallback,
        on_error: ReplyErrorCallback,
    ) -> None:
        try:
            account = resolve_wechat_account(cfg, ctx.account_id)
            abm = self.build_message(ctx, str(account.robot_id))
            chunk_limit = account.config.get("text_chunk_limit") or DEFAULT_TEXT_CHUNK_LIMIT
            event = WeChatRobotMessageEvent(
                message_str=abm.message_str,
                message_obj=abm,
                platform_meta=self._platform_meta(),
                session_id=abm.session_id,
                deliver=deliver,
                cfg=cfg,
                account_id=account.account_id,
                text_chunk_limit=int(chunk_limit),
            )
            self._session_accounts[abm.session_id] = account.account_id
            self._commit_event(event)
        except Exception as e:
            on_error(e, "dispatch")
            return
        logger.debug(f"[wechat] committed event {ctx.message_sid} session={ctx.session_key}")


class AstrBotChannelRuntime:
    def __init__(
        self,
        platform_meta: Callable[[], PlatformMetadata],
        commit_event: Callable[[WeChatRobotMessageEvent], None],
    ) -> None:
        self.pairing = AstrBotPairingService()
        self.routing = AstrBotRoutingService()
        self.reply = AstrBotReplyService(platform_meta, commit_event)
        self.activity = AstrBotActivityService()

"""
宿主运行时接口

插件不持有全局运行时单例：路由、配对、回复分发、活动记录都由宿主实现，
通过构造参数显式传入（见 WeChatChannelPlugin / WeChatInboundDeps）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Protocol

TrustTier = Literal["trusted", "guest"]
PeerKind = Literal["dm", "group"]

DeliverCallback = Callable[[Dict[str, Any]], Awaitable[None]]
ReplyErrorCallback = Callable[[Exception, str], None]


@dataclass
class AgentRoute:
    session_key: str
    account_id: str
    agent_id: Optional[str] = None


@dataclass
class InboundContext:
    """交给宿主回复流水线的入站上下文。"""

    body: str
    raw_body: str
    command_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    chat_type: Literal["direct", "group"]
    conversation_label: str
    sender_name: str
    sender_id: str
    message_sid: str
    timestamp: int
    was_mentioned: bool
    command_authorized: bool
    trust_tier: TrustTier
    originating_to: str
    provider: str = "wechat"
    surface: str = "wechat"
    originating_channel: str = "wechat"
    group_subject: Optional[str] = None


class PairingService(Protocol):
    def build_pairing_reply(
        self,
        *,
        cfg: Dict[str, Any],
        channel: str,
        sender_id: str,
        sender_name: str,
    ) -> Optional[str]: ...

    def upsert_pairing_request(
        self,
        *,
        channel: str,
        account_id: str,
        sender_id: str,
        sender_name: Optional[str],
        timestamp: int,
    ) -> None: ...


class RoutingService(Protocol):
    def resolve_agent_route(
        self,
        *,
        cfg: Dict[str, Any],
        channel: str,
        account_id: str,
        peer_kind: PeerKind,
        peer_id: str,
    ) -> AgentRoute: ...


class ReplyService(Protocol):
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
    ) -> str: ...

    def finalize_inbound_context(self, ctx: InboundContext) -> Optional[InboundContext]: ...

    async def dispatch_reply(
        self,
        ctx: InboundContext,
        *,
        cfg: Dict[str, Any],
        deliver: DeliverCallback,
        on_error: ReplyErrorCallback,
    ) -> None: ...


class ActivityService(Protocol):
    def record(self, *, channel: str, account_id: str, direction: str) -> None: ...


class ChannelRuntime(Protocol):
    pairing: PairingService
    routing: RoutingService
    reply: ReplyService
    activity: ActivityService

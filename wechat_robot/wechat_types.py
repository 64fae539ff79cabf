from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

DmPolicy = Literal["pairing", "allowlist", "open", "disabled"]
TokenSource = Literal["env", "config", "configFile", "none"]
ChatType = Literal["direct", "group"]

# 群聊 ID 后缀
CHATROOM_SUFFIX = "@chatroom"

# 消息类型（部分）
MSG_TYPE_TEXT = 1
MSG_TYPE_IMAGE = 3
MSG_TYPE_VOICE = 34
MSG_TYPE_VIDEO = 43
MSG_TYPE_EMOJI = 47
MSG_TYPE_APP = 49
MSG_TYPE_SYSTEM = 10000
MSG_TYPE_RECALL = 10002


@dataclass
class WeChatPollingConfig:
    polling_interval_ms: Optional[int] = None
    poll_contact_ids: List[str] = field(default_factory=list)
    poll_all_contacts: bool = False
    max_poll_contacts: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["WeChatPollingConfig"]:
        if not isinstance(raw, dict):
            return None
        contact_ids = raw.get("poll_contact_ids") or []
        if not isinstance(contact_ids, list):
            contact_ids = []
        interval = raw.get("polling_interval_ms")
        max_contacts = raw.get("max_poll_contacts")
        return cls(
            polling_interval_ms=int(interval) if interval is not None else None,
            poll_contact_ids=[str(c).strip() for c in contact_ids if str(c).strip()],
            poll_all_contacts=bool(raw.get("poll_all_contacts", False)),
            max_poll_contacts=int(max_contacts) if max_contacts is not None else None,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.poll_contact_ids) or self.poll_all_contacts


@dataclass
class WeChatTokenResolution:
    token: str
    source: TokenSource


@dataclass
class ResolvedWeChatAccount:
    account_id: str
    enabled: bool
    base_url: str
    api_token: str
    token_source: TokenSource
    robot_id: int
    config: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None
    polling: Optional[WeChatPollingConfig] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_token.strip() and self.base_url.strip())


@dataclass
class WeChatInboundMessage:
    """轮询器产出的标准化入站消息。"""

    id: str  # contactId:msgId
    msg_id: int
    from_wxid: str  # 群聊为群 ID，私聊为发送者 wxid
    sender_wxid: str
    to_wxid: str
    body: str
    timestamp: int  # 毫秒
    chat_type: ChatType
    chat_id: str
    is_at_me: bool = False
    is_recalled: bool = False
    message_type: int = MSG_TYPE_TEXT
    sender_nickname: Optional[str] = None
    attachment_url: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return self.chat_type == "group"

    @property
    def reply_target(self) -> str:
        return self.chat_id if self.is_group else self.sender_wxid

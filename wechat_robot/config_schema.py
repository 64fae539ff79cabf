"""微信通道配置模式（channels.wechat）。"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Policy = Literal["pairing", "allowlist", "open", "disabled"]


class WeChatPollingConfigModel(BaseModel):
    polling_interval_ms: Optional[int] = Field(None, gt=0, description="轮询间隔（毫秒），默认 3000")
    poll_contact_ids: Optional[List[str]] = Field(None, description="要轮询的联系人 ID 列表（好友 wxid 或群聊 ID）")
    poll_all_contacts: Optional[bool] = Field(None, description="是否轮询所有联系人")
    max_poll_contacts: Optional[int] = Field(None, gt=0, description="最大轮询联系人数，默认 50")


class WeChatAccountConfigModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = Field(None, description="账户显示名称")
    enabled: Optional[bool] = None
    base_url: Optional[str] = Field(None, description='API 服务地址，例如 "http://localhost:9000"')
    api_token: Optional[str] = None
    token_file: Optional[str] = Field(None, description="从文件读取 API Token")
    robot_id: Optional[int] = Field(None, gt=0, description="机器人实例 ID")
    dm_policy: Optional[Policy] = Field(None, description="私聊访问策略，默认 pairing")
    group_policy: Optional[Policy] = Field(None, description="群聊访问策略，未设置时沿用 dm_policy")
    allow_from: Optional[List[str]] = Field(None, description="允许的用户 wxid 列表")
    require_mention: Optional[bool] = Field(None, description="群聊是否需要 @机器人，默认 true")
    guest_safety_prefix: Optional[bool] = Field(None, description="访客消息是否加安全前缀，默认 true")
    media_max_mb: Optional[float] = Field(None, gt=0, description="最大媒体文件大小（MB）")
    text_chunk_limit: Optional[int] = Field(None, gt=0, description="单条文本最大长度，默认 2048")
    polling: Optional[WeChatPollingConfigModel] = None


class WeChatConfigModel(WeChatAccountConfigModel):
    accounts: Optional[Dict[str, WeChatAccountConfigModel]] = None
    default_account: Optional[str] = None


def validate_wechat_config(section: Optional[Dict[str, Any]]) -> WeChatConfigModel:
    return WeChatConfigModel.model_validate(section or {})


def wechat_config_json_schema() -> Dict[str, Any]:
    return WeChatConfigModel.model_json_schema()

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from astrbot import logger
from astrbot.api.event import MessageChain
from astrbot.api.message_components import Image, Plain, Record
from astrbot.api.platform import (
    Platform,
    PlatformMetadata,
    register_platform_adapter,
)
from astrbot.core.platform.astr_message_event import MessageSesion

from .astrbot_runtime import AstrBotChannelRuntime
from .config_schema import validate_wechat_config
from .version import ADAPTER_DISPLAY_NAME, LOGO_FILE
from .wechat_accounts import (
    CHANNEL_KEY,
    list_enabled_wechat_accounts,
    resolve_default_wechat_account_id,
    resolve_wechat_account,
)
from .wechat_channel import WeChatChannelPlugin, WeChatGatewayContext
from .wechat_event import image_url_of
from .wechat_send import send_message_wechat

# AstrBot 平台层自带的键，不属于通道配置
_PLATFORM_KEYS = {"id", "type", "enable"}
_POLLING_KEYS = ("polling_interval_ms", "poll_contact_ids", "poll_all_contacts", "max_poll_contacts")
_LIST_KEYS = ("allow_from", "poll_contact_ids")


def _split_csv(value: Any) -> Any:
    # WebUI 里列表类配置按逗号分隔的字符串填写
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def build_wechat_section(platform_config: Dict[str, Any]) -> Dict[str, Any]:
    """把 AstrBot 平台配置（扁平键）整理成 channels.wechat 配置段。"""
    section: Dict[str, Any] = {}
    polling: Dict[str, Any] = dict(platform_config.get("polling") or {})
    for key, value in platform_config.items():
        if key in _PLATFORM_KEYS or key == "polling":
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if key in _LIST_KEYS:
            value = _split_csv(value)
        if key in _POLLING_KEYS:
            polling[key] = value
        else:
            section[key] = value
    if polling:
        section["polling"] = polling
    return section


@register_platform_adapter(
    "wechat_robot",
    ADAPTER_DISPLAY_NAME,
    default_config_tmpl={
        "base_url": "http://localhost:9000",
        "api_token": "",
        "token_file": "",
        "robot_id": 1,

        # 访问策略：pairing / allowlist / open / disabled
        # group_policy 留空时沿用 dm_policy
        "dm_policy": "pairing",
        "group_policy": "",
        # 白名单 wxid，逗号分隔，可带 wechat: / wx: 前缀
        "allow_from": "",
        # 群聊中只处理 @机器人 的消息
        "require_mention": True,
        # 访客（非白名单）消息加安全前缀
        "guest_safety_prefix": True,
        "text_chunk_limit": 2048,

        # 轮询：poll_contact_ids 为逗号分隔的好友 wxid / 群 ID；
        # 两者都未设置时不启动轮询
        "polling_interval_ms": 3000,
        "poll_contact_ids": "",
        "poll_all_contacts": False,
        "max_poll_contacts": 50,
    },
)
class WeChatRobotPlatformAdapter(Platform):
    def __init__(self, platform_config: dict, platform_settings: dict, event_queue: asyncio.Queue) -> None:
        super().__init__(platform_config, event_queue)
        self.settings = platform_settings

        section = validate_wechat_config(build_wechat_section(self.config)).model_dump(exclude_none=True)
        if not (section.get("base_url") or "").strip():
            raise ValueError("wechat_robot.base_url is required")

        self._cfg: Dict[str, Any] = {"channels": {CHANNEL_KEY: section}}
        self._abort = asyncio.Event()
        self._statuses: Dict[str, Dict[str, Any]] = {}

        self.runtime = AstrBotChannelRuntime(platform_meta=self.meta, commit_event=self.commit_event)
        self.channel = WeChatChannelPlugin(self.runtime)

    @property
    def channel_config(self) -> Dict[str, Any]:
        return self._cfg

    def meta(self) -> PlatformMetadata:
        return PlatformMetadata(
            name="wechat_robot",
            description=ADAPTER_DISPLAY_NAME,
            id=self.config.get("id", "wechat_robot"),
            adapter_display_name=ADAPTER_DISPLAY_NAME,
            logo_path=LOGO_FILE,
            support_streaming_message=False,
        )

    def account_status(self, account_id: str) -> Dict[str, Any]:
        status = self._statuses.get(account_id)
        if status is None:
            status = {**WeChatChannelPlugin.default_runtime_status, "account_id": account_id}
            self._statuses[account_id] = status
        return status

    def account_snapshots(self) -> List[Dict[str, Any]]:
        snapshots = []
        for account_id in self.channel.list_account_ids(self._cfg):
            account = self.channel.resolve_account(self._cfg, account_id)
            snapshots.append(self.channel.build_account_snapshot(account, self.account_status(account_id)))
        return snapshots

    def _gateway_context(self, account_id: str) -> WeChatGatewayContext:
        def set_status(status: Dict[str, Any]) -> None:
            self._statuses[account_id] = status

        return WeChatGatewayContext(
            cfg=self._cfg,
            account_id=account_id,
            account=resolve_wechat_account(self._cfg, account_id),
            abort_event=self._abort,
            get_status=lambda: self.account_status(account_id),
            set_status=set_status,
        )

    async def run(self):
        logger.info("[wechat-gateway] adapter started")
        for issue in self.channel.collect_status_issues(self.account_snapshots()):
            logger.warning(f"[wechat-gateway] {issue['account_id']}: {issue['message']} {issue['fix']}")

        for account in list_enabled_wechat_accounts(self._cfg):
            ctx = self._gateway_context(account.account_id)
            try:
                await self.channel.start_account(ctx)
            except Exception as e:
                logger.error(f"[wechat-gateway] start account {account.account_id} failed: {e}")
                ctx.set_status({**ctx.get_status(), "running": False, "last_error": str(e)})

        await self._abort.wait()

        for account_id in list(self._statuses):
            await self.channel.stop_account(self._gateway_context(account_id))
        logger.info("[wechat-gateway] adapter stopped")

    async def terminate(self):
        self._abort.set()
        self.channel.stop_all()

    async def send_by_session(self, session: MessageSesion, message_chain: MessageChain):
        to_wxid = session.session_id
        # 优先用最近收到该会话消息的账户回复
        account_id = self.runtime.reply.account_for_session(to_wxid) or resolve_default_wechat_account_id(self._cfg)
        limit = self.channel.text_chunk_limit_for(self._cfg, account_id)
        for item in message_chain.chain:
            result = None
            if isinstance(item, Plain) and item.text:
                logger.info(f"[wechat] send_by_session(text) -> {to_wxid} (len={len(item.text)})")
                for chunk in self.channel.chunk_text(item.text, limit):
                    result = await send_message_wechat(to_wxid, chunk, account_id=account_id, cfg=self._cfg)
                    if not result.ok:
                        break
            elif isinstance(item, Image):
                url = image_url_of(item)
                if not url:
                    logger.warning(f"[wechat] send_by_session image without public URL -> {to_wxid}")
                    continue
                result = await send_message_wechat(
                    to_wxid, "", account_id=account_id, cfg=self._cfg, media_url=url
                )
            elif isinstance(item, Record):
                try:
                    record_path = await item.convert_to_file_path()
                except Exception as e:
                    logger.error(f"[wechat] send_by_session record convert failed: {e}")
                    continue
                result = await send_message_wechat(
                    to_wxid, "", account_id=account_id, cfg=self._cfg, voice_file_path=record_path
                )
            if result is not None and not result.ok:
                logger.warning(f"[wechat] send_by_session -> {to_wxid} failed: {result.error}")

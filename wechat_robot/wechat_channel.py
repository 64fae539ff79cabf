"""
微信通道插件

WeChatChannelPlugin 汇总宿主需要的全部能力：账户配置、访问策略、目标解析、
通讯录、setup、配对通知、出站发送（含文本分段）、状态快照、探测、
账户生命周期（启动/停止轮询）以及消息动作。宿主运行时通过构造参数注入。
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from astrbot import logger

from .config_schema import wechat_config_json_schema
from .runtime import ChannelRuntime
from .version import __version__
from .wechat_accounts import (
    DEFAULT_ACCOUNT_ID,
    apply_account_setup_to_config,
    delete_account_from_config,
    get_wechat_section,
    list_wechat_account_ids,
    normalize_account_id,
    resolve_default_wechat_account_id,
    resolve_wechat_account,
    set_account_enabled_in_config,
)
from .wechat_actions import WeChatMessageActions
from .wechat_client import WeChatRobotClient
from .wechat_inbound import WeChatInboundDeps, handle_wechat_inbound_message, normalize_allow_entry
from .wechat_poller import WeChatMessagePoller, create_wechat_poller
from .wechat_probe import DEFAULT_PROBE_TIMEOUT_MS, WeChatProbeResult, probe_wechat
from .wechat_send import send_message_wechat
from .wechat_status import collect_wechat_status_issues
from .wechat_types import ResolvedWeChatAccount

CHANNEL_ID = "wechat"
DEFAULT_TEXT_CHUNK_LIMIT = 2048
PAIRING_APPROVED_MESSAGE = "✅ 已通过配对审核，现在可以和机器人对话了。"

_TARGET_PREFIX_RE = re.compile(r"^(wechat|wx|group):", re.IGNORECASE)
_WXID_RE = re.compile(r"^wxid_[a-z0-9]+$", re.IGNORECASE)
_CHATROOM_RE = re.compile(r"@chatroom$", re.IGNORECASE)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def chunk_wechat_text(text: str, limit: int) -> List[str]:
    """贪心分段：优先在窗口内最后一个换行/空格处断开，否则在 limit 处硬切。"""
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return [text]

    chunks: List[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        last_newline = window.rfind("\n")
        last_space = window.rfind(" ")
        break_idx = last_newline if last_newline > 0 else last_space
        if break_idx <= 0:
            break_idx = limit
        chunk = remaining[:break_idx].rstrip()
        if chunk:
            chunks.append(chunk)
        # 断点是分隔符时跳过它
        broke_on_separator = break_idx < len(remaining) and remaining[break_idx].isspace()
        next_start = min(len(remaining), break_idx + (1 if broke_on_separator else 0))
        remaining = remaining[next_start:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def format_allow_from(allow_from: List[Any]) -> List[str]:
    out: List[str] = []
    for entry in allow_from:
        value = str(entry).strip()
        if value:
            out.append(normalize_allow_entry(value))
    return out


@dataclass
class WeChatGatewayContext:
    cfg: Dict[str, Any]
    account_id: str
    account: ResolvedWeChatAccount
    abort_event: asyncio.Event
    get_status: Callable[[], Dict[str, Any]]
    set_status: Callable[[Dict[str, Any]], None]


class WeChatChannelPlugin:
    id = CHANNEL_ID
    meta = {
        "id": CHANNEL_ID,
        "label": "WeChat",
        "selection_label": "WeChat (Robot Admin)",
        "docs_path": "/channels/wechat",
        "blurb": "WeChat messaging via wechat-robot-admin-backend API.",
        "aliases": ["wx"],
        "order": 85,
        "version": __version__,
    }
    capabilities = {
        "chat_types": ["direct", "group"],
        "media": True,
        "reactions": False,
        "threads": False,
        "polls": False,
        "native_commands": False,
        "block_streaming": True,
    }
    reload_config_prefixes = ["channels.wechat"]
    default_runtime_status = {
        "account_id": DEFAULT_ACCOUNT_ID,
        "running": False,
        "last_start_at": None,
        "last_stop_at": None,
        "last_error": None,
    }

    def __init__(self, runtime: ChannelRuntime) -> None:
        self.runtime = runtime
        self.actions = WeChatMessageActions()
        self._pollers: Dict[str, WeChatMessagePoller] = {}

    @property
    def config_schema(self) -> Dict[str, Any]:
        return wechat_config_json_schema()

    # ------------------------------------------------------------------
    # 账户配置
    # ------------------------------------------------------------------

    def list_account_ids(self, cfg: Dict[str, Any]) -> List[str]:
        return list_wechat_account_ids(cfg)

    def resolve_account(self, cfg: Dict[str, Any], account_id: Optional[str] = None) -> ResolvedWeChatAccount:
        return resolve_wechat_account(cfg, account_id)

    def default_account_id(self, cfg: Dict[str, Any]) -> str:
        return resolve_default_wechat_account_id(cfg)

    def set_account_enabled(self, cfg: Dict[str, Any], account_id: str, enabled: bool) -> Dict[str, Any]:
        return set_account_enabled_in_config(cfg, account_id, enabled)

    def delete_account(self, cfg: Dict[str, Any], account_id: str) -> Dict[str, Any]:
        return delete_account_from_config(cfg, account_id)

    @staticmethod
    def is_configured(account: ResolvedWeChatAccount) -> bool:
        return account.configured

    @staticmethod
    def describe_account(account: ResolvedWeChatAccount) -> Dict[str, Any]:
        return {
            "account_id": account.account_id,
            "name": account.name,
            "enabled": account.enabled,
            "configured": bool(account.api_token.strip()),
            "token_source": account.token_source,
            "base_url": account.base_url,
        }

    def resolve_allow_from(self, cfg: Dict[str, Any], account_id: Optional[str] = None) -> List[str]:
        return list(resolve_wechat_account(cfg, account_id).config.get("allow_from") or [])

    @staticmethod
    def format_allow_from(allow_from: List[Any]) -> List[str]:
        return format_allow_from(allow_from)

    # ------------------------------------------------------------------
    # 访问策略 / 群聊
    # ------------------------------------------------------------------

    def resolve_dm_policy(
        self,
        cfg: Dict[str, Any],
        account: ResolvedWeChatAccount,
        account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        resolved_id = account_id or account.account_id or DEFAULT_ACCOUNT_ID
        accounts = get_wechat_section(cfg).get("accounts") or {}
        base_path = (
            f"channels.wechat.accounts.{resolved_id}." if resolved_id in accounts else "channels.wechat."
        )
        return {
            "policy": account.config.get("dm_policy") or "pairing",
            "allow_from": list(account.config.get("allow_from") or []),
            "policy_path": f"{base_path}dm_policy",
            "allow_from_path": base_path,
            "approve_hint": f"Add the sender wxid to {base_path}allow_from to approve.",
            "normalize_entry": normalize_allow_entry,
        }

    def resolve_require_mention(self, cfg: Dict[str, Any], account_id: Optional[str] = None) -> bool:
        value = resolve_wechat_account(cfg, account_id).config.get("require_mention")
        return True if value is None else bool(value)

    @staticmethod
    def resolve_reply_to_mode() -> str:
        return "off"

    # ------------------------------------------------------------------
    # 目标解析
    # ------------------------------------------------------------------

    @staticmethod
    def normalize_target(raw: Optional[str]) -> Optional[str]:
        trimmed = (raw or "").strip()
        if not trimmed:
            return None
        return _TARGET_PREFIX_RE.sub("", trimmed)

    @staticmethod
    def looks_like_id(raw: str) -> bool:
        trimmed = (raw or "").strip()
        if not trimmed:
            return False
        return bool(_WXID_RE.match(trimmed) or _CHATROOM_RE.search(trimmed))

    target_hint = "<wxid|chatRoomId>"

    # ------------------------------------------------------------------
    # 通讯录（失败时返回空列表）
    # ------------------------------------------------------------------

    @staticmethod
    def _client_for(account: ResolvedWeChatAccount) -> WeChatRobotClient:
        return WeChatRobotClient(base_url=account.base_url, api_token=account.api_token, robot_id=account.robot_id)

    async def list_peers(
        self,
        cfg: Dict[str, Any],
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        account = resolve_wechat_account(cfg, account_id)
        if not account.api_token:
            return []
        try:
            resp = await self._client_for(account).get_contact_list("friend")
        except Exception as e:
            logger.warning(f"[wechat] list peers failed: {e}")
            return []
        q = (query or "").strip().lower()
        peers = [
            {"kind": "user", "id": c.get("wechat_id"), "name": c.get("nickname")}
            for c in resp.get("data") or []
            if not q
            or q in (c.get("nickname") or "").lower()
            or q in (c.get("wechat_id") or "").lower()
        ]
        return peers[:limit] if limit and limit > 0 else peers

    async def list_groups(
        self,
        cfg: Dict[str, Any],
        account_id: Optional[str] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        account = resolve_wechat_account(cfg, account_id)
        if not account.api_token:
            return []
        try:
            resp = await self._client_for(account).get_chat_room_list()
        except Exception as e:
            logger.warning(f"[wechat] list groups failed: {e}")
            return []
        q = (query or "").strip().lower()
        groups = [
            {"kind": "group", "id": r.get("wechat_id"), "name": r.get("nickname")}
            for r in resp.get("data") or []
            if not q or q in (r.get("nickname") or "").lower()
        ]
        return groups[:limit] if limit and limit > 0 else groups

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------

    @staticmethod
    def resolve_setup_account_id(account_id: Optional[str]) -> str:
        return normalize_account_id(account_id)

    @staticmethod
    def validate_setup_input(account_id: str, setup: Dict[str, Any]) -> Optional[str]:
        if setup.get("use_env") and normalize_account_id(account_id) != DEFAULT_ACCOUNT_ID:
            return "WECHAT_API_TOKEN can only be used for the default account."
        if not setup.get("use_env") and not setup.get("token") and not setup.get("token_file"):
            return "WeChat requires api_token or --token-file (or --use-env)."
        return None

    def apply_account_config(self, cfg: Dict[str, Any], account_id: str, setup: Dict[str, Any]) -> Dict[str, Any]:
        return apply_account_setup_to_config(cfg, account_id, setup)

    # ------------------------------------------------------------------
    # 配对
    # ------------------------------------------------------------------

    pairing_id_label = "wechatUserId"

    @staticmethod
    def normalize_pairing_entry(entry: str) -> str:
        return re.sub(r"^(wechat|wx):", "", entry, flags=re.IGNORECASE)

    async def notify_pairing_approval(self, cfg: Dict[str, Any], sender_id: str) -> None:
        account = resolve_wechat_account(cfg)
        if not account.api_token:
            raise ValueError("WeChat API token not configured")
        result = await send_message_wechat(
            sender_id,
            PAIRING_APPROVED_MESSAGE,
            base_url=account.base_url,
            api_token=account.api_token,
            robot_id=account.robot_id,
        )
        if not result.ok:
            logger.warning(f"[wechat] notify pairing approval to {sender_id} failed: {result.error}")

    # ------------------------------------------------------------------
    # 出站
    # ------------------------------------------------------------------

    delivery_mode = "direct"
    chunker_mode = "text"
    text_chunk_limit = DEFAULT_TEXT_CHUNK_LIMIT

    @staticmethod
    def chunk_text(text: str, limit: int = DEFAULT_TEXT_CHUNK_LIMIT) -> List[str]:
        return chunk_wechat_text(text, limit)

    def text_chunk_limit_for(self, cfg: Dict[str, Any], account_id: Optional[str] = None) -> int:
        value = resolve_wechat_account(cfg, account_id).config.get("text_chunk_limit")
        try:
            return int(value) if value else DEFAULT_TEXT_CHUNK_LIMIT
        except (TypeError, ValueError):
            return DEFAULT_TEXT_CHUNK_LIMIT

    async def send_text(
        self,
        to: str,
        text: str,
        cfg: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = await send_message_wechat(
            self.normalize_target(to) or "",
            text,
            account_id=account_id,
            cfg=cfg,
        )
        return {
            "channel": CHANNEL_ID,
            "ok": result.ok,
            "message_id": result.message_id or "",
            "error": result.error,
        }

    async def send_media(
        self,
        to: str,
        text: Optional[str],
        cfg: Dict[str, Any],
        media_url: Optional[str] = None,
        voice_file_path: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = await send_message_wechat(
            self.normalize_target(to) or "",
            text or "",
            account_id=account_id,
            media_url=media_url,
            voice_file_path=voice_file_path,
            cfg=cfg,
        )
        return {
            "channel": CHANNEL_ID,
            "ok": result.ok,
            "message_id": result.message_id or "",
            "error": result.error,
        }

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    @staticmethod
    def collect_status_issues(snapshots: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        return collect_wechat_status_issues(snapshots)

    @staticmethod
    def build_channel_summary(snapshot: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "configured": snapshot.get("configured") or False,
            "token_source": snapshot.get("token_source") or "none",
            "base_url": snapshot.get("base_url"),
            "running": snapshot.get("running") or False,
            "last_start_at": snapshot.get("last_start_at"),
            "last_stop_at": snapshot.get("last_stop_at"),
            "last_error": snapshot.get("last_error"),
            "probe": snapshot.get("probe"),
            "last_probe_at": snapshot.get("last_probe_at"),
        }

    @staticmethod
    async def probe_account(
        account: ResolvedWeChatAccount,
        timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    ) -> WeChatProbeResult:
        return await probe_wechat(account.base_url, account.api_token, account.robot_id, timeout_ms)

    @staticmethod
    def build_account_snapshot(
        account: ResolvedWeChatAccount,
        runtime_status: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        status = runtime_status or {}
        dm_policy = account.config.get("dm_policy") or "pairing"
        return {
            "account_id": account.account_id,
            "name": account.name,
            "enabled": account.enabled,
            "configured": account.configured,
            "token_source": account.token_source,
            "base_url": account.base_url,
            "running": status.get("running", False),
            "last_start_at": status.get("last_start_at"),
            "last_stop_at": status.get("last_stop_at"),
            "last_error": status.get("last_error"),
            "last_inbound_at": status.get("last_inbound_at"),
            "last_outbound_at": status.get("last_outbound_at"),
            "dm_policy": dm_policy,
            "group_policy": account.config.get("group_policy") or dm_policy,
        }

    # ------------------------------------------------------------------
    # 账户生命周期
    # ------------------------------------------------------------------

    def poller_for(self, account_id: str) -> Optional[WeChatMessagePoller]:
        return self._pollers.get(account_id)

    async def start_account(self, ctx: WeChatGatewayContext) -> Optional[WeChatMessagePoller]:
        account = ctx.account
        logger.info(f"[wechat-gateway] start account {ctx.account_id}")

        polling = account.polling
        if polling is None or not polling.enabled:
            logger.info(f"[wechat-gateway] no polling configured for {ctx.account_id}, skipping")
            return None
        if not account.api_token:
            raise ValueError("WeChat API token not configured")

        config = account.config
        deps = WeChatInboundDeps(
            cfg=ctx.cfg,
            runtime=self.runtime,
            account_id=ctx.account_id,
            base_url=account.base_url,
            api_token=account.api_token,
            robot_id=account.robot_id,
            allow_from=list(config.get("allow_from") or []),
            dm_policy=config.get("dm_policy"),
            group_policy=config.get("group_policy"),
            require_mention=config.get("require_mention"),
            guest_safety_prefix=config.get("guest_safety_prefix"),
        )

        async def on_message(msg) -> None:
            try:
                await handle_wechat_inbound_message(msg, deps)
                ctx.set_status({**ctx.get_status(), "last_inbound_at": _now_iso()})
            except Exception as e:
                logger.error(f"[wechat-gateway] handle inbound {msg.id} failed: {e}")
                ctx.set_status({**ctx.get_status(), "last_error": str(e)})

        def on_error(error: Exception) -> None:
            ctx.set_status({**ctx.get_status(), "last_error": str(error)})

        poller = create_wechat_poller(
            base_url=account.base_url,
            api_token=account.api_token,
            robot_id=account.robot_id,
            account_id=ctx.account_id,
            polling_config=polling,
            abort_event=ctx.abort_event,
            on_message=on_message,
            on_error=on_error,
        )

        previous = self._pollers.pop(ctx.account_id, None)
        if previous is not None:
            previous.stop()

        await poller.start()
        self._pollers[ctx.account_id] = poller
        ctx.set_status(
            {
                **ctx.get_status(),
                "running": True,
                "last_start_at": _now_iso(),
                "last_error": None,
            }
        )
        return poller

    async def stop_account(self, ctx: WeChatGatewayContext) -> None:
        poller = self._pollers.pop(ctx.account_id, None)
        if poller is not None:
            poller.stop()
        ctx.set_status({**ctx.get_status(), "running": False, "last_stop_at": _now_iso()})

    def stop_all(self) -> None:
        for poller in self._pollers.values():
            poller.stop()
        self._pollers.clear()

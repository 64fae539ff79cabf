"""
消息发送

支持文本、图片（URL）和语音（本地文件，multipart 上传）。
发送失败不抛异常，统一返回 WeChatSendResult(ok=False, error=...)。
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from astrbot import logger

from .wechat_accounts import DEFAULT_BASE_URL, DEFAULT_ROBOT_ID, resolve_wechat_account
from .wechat_client import WeChatRobotClient


@dataclass
class WeChatSendResult:
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class _SendContext:
    base_url: str
    api_token: str
    robot_id: int
    media_max_mb: Optional[float] = None


def _resolve_send_context(
    *,
    api_token: Optional[str],
    base_url: Optional[str],
    robot_id: Optional[int],
    account_id: Optional[str],
    cfg: Optional[Dict[str, Any]],
) -> _SendContext:
    if cfg is not None:
        account = resolve_wechat_account(cfg, account_id)
        media_max_mb = account.config.get("media_max_mb")
        return _SendContext(
            base_url=base_url if base_url is not None else account.base_url,
            api_token=api_token if api_token is not None else account.api_token,
            robot_id=robot_id if robot_id is not None else account.robot_id,
            media_max_mb=float(media_max_mb) if media_max_mb is not None else None,
        )
    return _SendContext(
        base_url=base_url if base_url is not None else DEFAULT_BASE_URL,
        api_token=api_token or "",
        robot_id=robot_id if robot_id is not None else DEFAULT_ROBOT_ID,
    )


def _message_id(resp: Dict[str, Any]) -> Optional[str]:
    data = resp.get("data")
    if isinstance(data, dict) and data.get("message_id") is not None:
        return str(data["message_id"])
    return None


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


async def send_message_wechat(
    to_wxid: str,
    text: str,
    *,
    api_token: Optional[str] = None,
    base_url: Optional[str] = None,
    robot_id: Optional[int] = None,
    account_id: Optional[str] = None,
    cfg: Optional[Dict[str, Any]] = None,
    media_url: Optional[str] = None,
    voice_file_path: Optional[str] = None,
    at: Optional[List[str]] = None,
) -> WeChatSendResult:
    ctx = _resolve_send_context(
        api_token=api_token,
        base_url=base_url,
        robot_id=robot_id,
        account_id=account_id,
        cfg=cfg,
    )
    if not ctx.api_token:
        return WeChatSendResult(ok=False, error="No WeChat API token configured")

    target = (to_wxid or "").strip()
    if not target:
        return WeChatSendResult(ok=False, error="No to_wxid provided")

    client = WeChatRobotClient(base_url=ctx.base_url, api_token=ctx.api_token, robot_id=ctx.robot_id)
    text = text or ""

    try:
        if voice_file_path:
            if ctx.media_max_mb is not None:
                size = os.path.getsize(voice_file_path)
                if size > ctx.media_max_mb * 1024 * 1024:
                    return WeChatSendResult(
                        ok=False,
                        error=f"Voice file exceeds media_max_mb ({ctx.media_max_mb}MB)",
                    )
            voice_data = await asyncio.to_thread(_read_file, voice_file_path)
            resp = await client.send_voice_message(
                to_wxid=target,
                voice_data=voice_data,
                filename=os.path.basename(voice_file_path) or "voice.mp3",
            )
            # 同时有文本时单独再发一条
            if text.strip():
                await client.send_text_message(to_wxid=target, content=text, at=at)
            return WeChatSendResult(ok=True, message_id=_message_id(resp))

        if media_url:
            resp = await client.send_image_message(to_wxid=target, image_url=media_url)
            if text.strip():
                await client.send_text_message(to_wxid=target, content=text, at=at)
            return WeChatSendResult(ok=True, message_id=_message_id(resp))

        if not text.strip():
            return WeChatSendResult(ok=False, error="No message content provided")

        resp = await client.send_text_message(to_wxid=target, content=text, at=at)
        return WeChatSendResult(ok=True, message_id=_message_id(resp))
    except Exception as e:
        logger.error(f"[wechat] send to {target} failed: {e}")
        return WeChatSendResult(ok=False, error=str(e) or e.__class__.__name__)

from __future__ import annotations

import asyncio
import json
import socket
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from astrbot import logger

DEFAULT_TIMEOUT_MS = 10000


class WeChatApiError(RuntimeError):
    """后端返回 code != 200，或请求本身失败。"""

    def __init__(self, message: str, code: Optional[int] = None, response: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.response = response


class WeChatTimeoutError(WeChatApiError):
    pass


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return True
    if isinstance(exc, urllib.error.URLError):
        return isinstance(exc.reason, (socket.timeout, TimeoutError))
    return False


def _header_value(value: str) -> str:
    # 引号、反斜杠、换行会破坏 Content-Disposition 头
    return "".join("_" if ch in "\"\\\r\n" else ch for ch in value)


def _encode_multipart(
    fields: Dict[str, str],
    files: List[Tuple[str, str, bytes, str]],
) -> Tuple[bytes, str]:
    boundary = f"----wechat-robot-{uuid.uuid4().hex}"
    parts: List[bytes] = []
    for name, value in fields.items():
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    for name, filename, data, content_type in files:
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"; filename="{_header_value(filename)}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
        )
        parts.append(data)
        parts.append(b"\r\n")
    parts.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"


@dataclass
class WeChatRobotClient:
    """wechat-robot-admin-backend REST API 客户端。

    所有响应都包在 {code, message, data} 中，code != 200 视为业务错误，
    与 HTTP 状态码无关。
    """

    base_url: str
    api_token: str
    robot_id: int
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    def _url(self, path: str, query: Optional[Dict[str, Any]] = None) -> str:
        p = path if path.startswith("/") else f"/{path}"
        url = urllib.parse.urljoin(self.base_url, p)
        params: Dict[str, str] = {"id": str(self.robot_id)}
        for k, v in (query or {}).items():
            if v is None or v == "":
                continue
            params[k] = str(v)
        return f"{url}?{urllib.parse.urlencode(params)}"

    def _request_sync(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        content_type: Optional[str],
        timeout_ms: int,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_token}"}
        if content_type:
            headers["Content-Type"] = content_type
        req = urllib.request.Request(url, data=data, headers=headers, method=method)

        status: Optional[int] = None
        try:
            with urllib.request.urlopen(req, timeout=timeout_ms / 1000) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            # 后端在非 2xx 时仍可能返回标准信封，交给下面统一判断 code
            status = e.code
            raw = e.read().decode("utf-8", errors="replace") if e.fp else ""
        except Exception as e:
            if _is_timeout(e):
                raise WeChatTimeoutError(f"Request timed out after {timeout_ms}ms") from e
            raise WeChatApiError(f"Failed calling {url}: {e}") from e

        try:
            payload = json.loads(raw)
        except ValueError as e:
            if status is not None:
                raise WeChatApiError(f"HTTP {status} calling {url}: {raw[:500]}", code=status, response=raw) from e
            raise WeChatApiError(f"Invalid JSON from {url}: {raw[:500]}", response=raw) from e
        if not isinstance(payload, dict):
            raise WeChatApiError(f"Unexpected response from {url}: {raw[:500]}", code=status, response=raw)
        return payload

    async def _call(
        self,
        method: str,
        path: str,
        *,
        query: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        multipart: Optional[Tuple[bytes, str]] = None,
        timeout_ms: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = self._url(path, query)
        data: Optional[bytes] = None
        content_type: Optional[str] = "application/json"
        if multipart is not None:
            data, content_type = multipart
        elif body is not None:
            data = json.dumps(body, ensure_ascii=False).encode("utf-8")

        resp = await asyncio.to_thread(
            self._request_sync,
            method,
            url,
            data,
            content_type,
            timeout_ms or self.timeout_ms,
        )
        code = resp.get("code")
        if code != 200:
            raise WeChatApiError(
                resp.get("message") or error_message or f"API error: {path}",
                code=code if isinstance(code, int) else None,
                response=json.dumps(resp, ensure_ascii=False),
            )
        return resp

    async def get_robot_state(self, *, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        return await self._call("GET", "/api/v1/robot/state", timeout_ms=timeout_ms)

    async def get_robot_info(self, *, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        return await self._call("GET", "/api/v1/robot/view", timeout_ms=timeout_ms)

    async def send_text_message(
        self,
        *,
        to_wxid: str,
        content: str,
        at: Optional[List[str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        logger.info(f"[wechat] SendText -> {to_wxid} (len={len(content)})")
        body: Dict[str, Any] = {"id": self.robot_id, "to_wxid": to_wxid, "content": content}
        if at:
            body["at"] = list(at)
        resp = await self._call(
            "POST",
            "/api/v1/message/send/text",
            body=body,
            timeout_ms=timeout_ms,
            error_message="Failed to send text message",
        )
        logger.info(f"[wechat] SendText <- code={resp.get('code')} message={resp.get('message')}")
        return resp

    async def send_image_message(
        self,
        *,
        to_wxid: str,
        image_url: str,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        logger.info(f"[wechat] SendImage -> {to_wxid} ({image_url})")
        resp = await self._call(
            "POST",
            "/api/v1/message/send/image",
            body={"id": self.robot_id, "to_wxid": to_wxid, "image_url": image_url},
            timeout_ms=timeout_ms,
            error_message="Failed to send image message",
        )
        logger.info(f"[wechat] SendImage <- code={resp.get('code')} message={resp.get('message')}")
        return resp

    async def send_voice_message(
        self,
        *,
        to_wxid: str,
        voice_data: bytes,
        filename: str = "voice.mp3",
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        logger.info(f"[wechat] SendVoice -> {to_wxid} (bytes={len(voice_data)} file={filename})")
        multipart = _encode_multipart(
            {"id": str(self.robot_id), "to_wxid": to_wxid},
            [("voice", filename, voice_data, "audio/mpeg")],
        )
        resp = await self._call(
            "POST",
            "/api/v1/message/send/voice",
            multipart=multipart,
            timeout_ms=timeout_ms,
            error_message="Failed to send voice message",
        )
        logger.info(f"[wechat] SendVoice <- code={resp.get('code')} message={resp.get('message')}")
        return resp

    async def get_contact_list(
        self,
        type_: str = "friend",
        *,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """获取联系人列表，type_ 为 friend 或 chat_room。"""
        return await self._call(
            "GET",
            "/api/v1/contact/list",
            query={"type": type_},
            timeout_ms=timeout_ms,
            error_message="Failed to get contact list",
        )

    async def get_chat_room_list(self, *, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        return await self.get_contact_list("chat_room", timeout_ms=timeout_ms)

    async def get_chat_room_members(
        self,
        chat_room_id: str,
        *,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._call(
            "GET",
            "/api/v1/chat-room/members",
            query={"chat_room_id": chat_room_id},
            timeout_ms=timeout_ms,
            error_message="Failed to get chat room members",
        )

    async def get_chat_history(
        self,
        *,
        contact_id: str,
        keyword: Optional[str] = None,
        page_index: int = 1,
        page_size: int = 20,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """获取与联系人的聊天记录，data.items 按时间倒序（最新在前）。"""
        return await self._call(
            "GET",
            "/api/v1/chat/history",
            query={
                "contact_id": contact_id,
                "keyword": keyword,
                "page_index": int(page_index),
                "page_size": int(page_size),
            },
            timeout_ms=timeout_ms,
            error_message="Failed to get chat history",
        )

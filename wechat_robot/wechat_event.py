from __future__ import annotations

from typing import Any, Dict, Optional

from astrbot import logger
from astrbot.api.event import AstrMessageEvent, MessageChain
from astrbot.api.message_components import Image, Plain, Record
from astrbot.api.platform import AstrBotMessage, PlatformMetadata

from .runtime import DeliverCallback
from .wechat_channel import DEFAULT_TEXT_CHUNK_LIMIT, chunk_wechat_text
from .wechat_send import send_message_wechat


def image_url_of(item: Image) -> Optional[str]:
    # 后端只接受图片 URL，本地文件无法直接发送
    for candidate in (getattr(item, "url", None), getattr(item, "file", None)):
        if isinstance(candidate, str) and candidate.startswith(("http://", "https://")):
            return candidate
    return None


class WeChatRobotMessageEvent(AstrMessageEvent):
    def __init__(
        self,
        message_str: str,
        message_obj: AstrBotMessage,
        platform_meta: PlatformMetadata,
        session_id: str,
        deliver: DeliverCallback,
        cfg: Dict[str, Any],
        account_id: str,
        text_chunk_limit: int = DEFAULT_TEXT_CHUNK_LIMIT,
    ):
        super().__init__(message_str, message_obj, platform_meta, session_id)
        self._deliver = deliver
        self._cfg = cfg
        self._account_id = account_id
        self._text_chunk_limit = text_chunk_limit

    async def send(self, message: MessageChain):
        # 支持：文本（分段）、图片 URL、语音文件
        for item in message.chain:
            if isinstance(item, Plain) and item.text:
                chunks = chunk_wechat_text(item.text, self._text_chunk_limit)
                logger.info(
                    f"[wechat] event.send(text) -> {self.session_id} (len={len(item.text)}, chunks={len(chunks)})",
                )
                for chunk in chunks:
                    await self._deliver({"text": chunk})

            elif isinstance(item, Image):
                url = image_url_of(item)
                if not url:
                    logger.warning(f"[wechat] image without public URL, skip -> {self.session_id}")
                    continue
                await self._deliver({"text": "", "media_url": url})

            elif isinstance(item, Record):
                try:
                    record_path = await item.convert_to_file_path()
                except Exception as e:
                    logger.error(f"[wechat] convert record failed: {e}")
                    continue
                # 走统一发送逻辑，受 media_max_mb 限制
                result = await send_message_wechat(
                    self.session_id,
                    "",
                    account_id=self._account_id,
                    cfg=self._cfg,
                    voice_file_path=record_path,
                )
                if not result.ok:
                    logger.warning(f"[wechat] send record -> {self.session_id} failed: {result.error}")

        await super().send(message)

"""消息动作适配器：供工具/命令调用的 send 动作。"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .wechat_accounts import list_enabled_wechat_accounts
from .wechat_send import send_message_wechat

PROVIDER_ID = "wechat"


def _read_string_param(
    params: Dict[str, Any],
    key: str,
    *,
    required: bool = False,
    allow_empty: bool = False,
    trim: bool = True,
) -> Optional[str]:
    value = params.get(key)
    if value is None:
        if required:
            raise ValueError(f"{key} required")
        return None
    if not isinstance(value, str):
        value = str(value)
    if trim:
        value = value.strip()
    if not value and not allow_empty:
        if required:
            raise ValueError(f"{key} required")
        return None
    return value


class WeChatMessageActions:
    def list_actions(self, cfg: Dict[str, Any]) -> List[str]:
        accounts = [a for a in list_enabled_wechat_accounts(cfg) if a.token_source != "none"]
        if not accounts:
            return []
        return ["send"]

    def supports_buttons(self) -> bool:
        return False

    def extract_tool_send(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        action = args.get("action")
        action = action.strip() if isinstance(action, str) else ""
        if action != "sendMessage":
            return None
        to = args.get("to")
        if not isinstance(to, str) or not to:
            return None
        account_id = args.get("account_id")
        account_id = account_id.strip() if isinstance(account_id, str) else None
        return {"to": to, "account_id": account_id}

    async def handle_action(
        self,
        action: str,
        params: Dict[str, Any],
        cfg: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if action != "send":
            raise ValueError(f"Action {action} is not supported for provider {PROVIDER_ID}.")

        to = _read_string_param(params, "to", required=True)
        content = _read_string_param(params, "message", required=True, allow_empty=True)
        media_url = _read_string_param(params, "media", trim=False)

        result = await send_message_wechat(
            to or "",
            content or "",
            account_id=account_id,
            media_url=media_url,
            cfg=cfg,
        )
        if not result.ok:
            return {"ok": False, "error": result.error or "Failed to send WeChat message"}
        return {"ok": True, "to": to, "message_id": result.message_id}

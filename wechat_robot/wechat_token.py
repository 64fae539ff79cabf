"""API Token 解析。

来源优先级：
1. 账户配置中的 api_token
2. 账户配置中的 token_file
3. 基础配置中的 api_token（仅默认账户）
4. 基础配置中的 token_file（仅默认账户）
5. 环境变量 WECHAT_API_TOKEN（仅默认账户）
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

from astrbot import logger

from .wechat_types import WeChatTokenResolution

DEFAULT_ACCOUNT_ID = "default"
TOKEN_ENV_VAR = "WECHAT_API_TOKEN"


def _read_token_file(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read().strip()
    except OSError as e:
        logger.debug(f"[wechat] read token_file failed {path}: {e}")
        return ""


def _token_from_section(section: Dict[str, Any]) -> Optional[WeChatTokenResolution]:
    token = str(section.get("api_token") or "").strip()
    if token:
        return WeChatTokenResolution(token=token, source="config")
    token_file = str(section.get("token_file") or "").strip()
    if token_file:
        file_token = _read_token_file(token_file)
        if file_token:
            return WeChatTokenResolution(token=file_token, source="configFile")
    return None


def resolve_wechat_token(
    config: Optional[Dict[str, Any]],
    account_id: Optional[str] = None,
) -> WeChatTokenResolution:
    resolved_account_id = account_id or DEFAULT_ACCOUNT_ID
    is_default = resolved_account_id == DEFAULT_ACCOUNT_ID
    base = config if isinstance(config, dict) else {}

    accounts = base.get("accounts")
    account_section = accounts.get(resolved_account_id) if isinstance(accounts, dict) else None
    if isinstance(account_section, dict):
        found = _token_from_section(account_section)
        if found is not None:
            return found

    # 非默认账户不回退到基础配置/环境变量
    if not is_default:
        return WeChatTokenResolution(token="", source="none")

    found = _token_from_section(base)
    if found is not None:
        return found

    env_token = (os.environ.get(TOKEN_ENV_VAR) or "").strip()
    if env_token:
        return WeChatTokenResolution(token=env_token, source="env")

    return WeChatTokenResolution(token="", source="none")

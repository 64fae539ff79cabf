"""
微信账户解析

支持多账户配置：accounts.<id> 中的字段覆盖基础配置字段。
解析结果每次调用重新计算，不做缓存（配置可能被热重载）。
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from .wechat_token import DEFAULT_ACCOUNT_ID, resolve_wechat_token
from .wechat_types import ResolvedWeChatAccount, WeChatPollingConfig

DEFAULT_BASE_URL = "http://localhost:9000"
DEFAULT_ROBOT_ID = 1
CHANNEL_KEY = "wechat"


def normalize_account_id(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    return value or DEFAULT_ACCOUNT_ID


def get_wechat_section(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    channels = cfg.get("channels")
    if not isinstance(channels, dict):
        return {}
    section = channels.get(CHANNEL_KEY)
    return section if isinstance(section, dict) else {}


def _accounts_of(section: Dict[str, Any]) -> Dict[str, Any]:
    accounts = section.get("accounts")
    return accounts if isinstance(accounts, dict) else {}


def list_wechat_account_ids(cfg: Optional[Dict[str, Any]]) -> List[str]:
    ids = [k for k in _accounts_of(get_wechat_section(cfg)).keys() if k]
    if not ids:
        return [DEFAULT_ACCOUNT_ID]
    return sorted(ids)


def resolve_default_wechat_account_id(cfg: Optional[Dict[str, Any]]) -> str:
    section = get_wechat_section(cfg)
    preferred = str(section.get("default_account") or "").strip()
    if preferred:
        return preferred
    ids = list_wechat_account_ids(cfg)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def merge_wechat_account_config(cfg: Optional[Dict[str, Any]], account_id: str) -> Dict[str, Any]:
    section = get_wechat_section(cfg)
    base = {k: v for k, v in section.items() if k not in ("accounts", "default_account")}
    account = _accounts_of(section).get(account_id)
    if isinstance(account, dict):
        base.update(account)
    return base


def _as_robot_id(value: Any) -> int:
    try:
        robot_id = int(value)
    except (TypeError, ValueError):
        return DEFAULT_ROBOT_ID
    return robot_id if robot_id > 0 else DEFAULT_ROBOT_ID


def resolve_wechat_account(
    cfg: Optional[Dict[str, Any]],
    account_id: Optional[str] = None,
) -> ResolvedWeChatAccount:
    resolved_id = normalize_account_id(account_id)
    section = get_wechat_section(cfg)
    merged = merge_wechat_account_config(cfg, resolved_id)

    # 基础配置与账户配置都启用时账户才启用
    enabled = section.get("enabled") is not False and merged.get("enabled") is not False
    token = resolve_wechat_token(section, resolved_id)
    name = str(merged.get("name") or "").strip() or None

    return ResolvedWeChatAccount(
        account_id=resolved_id,
        name=name,
        enabled=enabled,
        base_url=str(merged.get("base_url") or "").strip() or DEFAULT_BASE_URL,
        api_token=token.token,
        token_source=token.source,
        robot_id=_as_robot_id(merged.get("robot_id", DEFAULT_ROBOT_ID)),
        config=merged,
        polling=WeChatPollingConfig.from_dict(merged.get("polling")),
    )


def list_enabled_wechat_accounts(cfg: Optional[Dict[str, Any]]) -> List[ResolvedWeChatAccount]:
    accounts = [resolve_wechat_account(cfg, account_id) for account_id in list_wechat_account_ids(cfg)]
    return [a for a in accounts if a.enabled]


# ---------------------------------------------------------------------------
# 配置修改（setup / CLI 使用），均返回新的配置 dict，不修改入参
# ---------------------------------------------------------------------------


def _copy_with_section(cfg: Optional[Dict[str, Any]]) -> tuple[Dict[str, Any], Dict[str, Any]]:
    nxt = copy.deepcopy(cfg) if isinstance(cfg, dict) else {}
    channels = nxt.setdefault("channels", {})
    section = channels.setdefault(CHANNEL_KEY, {})
    return nxt, section


def set_account_enabled_in_config(
    cfg: Optional[Dict[str, Any]],
    account_id: str,
    enabled: bool,
) -> Dict[str, Any]:
    nxt, section = _copy_with_section(cfg)
    account_id = normalize_account_id(account_id)
    accounts = _accounts_of(section)
    if account_id in accounts:
        accounts[account_id]["enabled"] = enabled
    elif account_id == DEFAULT_ACCOUNT_ID:
        section["enabled"] = enabled
    else:
        section.setdefault("accounts", {})[account_id] = {"enabled": enabled}
    return nxt


_BASE_CREDENTIAL_FIELDS = ("api_token", "token_file", "name", "base_url", "robot_id")


def delete_account_from_config(cfg: Optional[Dict[str, Any]], account_id: str) -> Dict[str, Any]:
    nxt, section = _copy_with_section(cfg)
    account_id = normalize_account_id(account_id)
    accounts = _accounts_of(section)
    if account_id in accounts:
        del accounts[account_id]
        if not accounts:
            section.pop("accounts", None)
    if account_id == DEFAULT_ACCOUNT_ID:
        for key in _BASE_CREDENTIAL_FIELDS:
            section.pop(key, None)
    return nxt


def apply_account_name_to_config(
    cfg: Optional[Dict[str, Any]],
    account_id: str,
    name: Optional[str],
) -> Dict[str, Any]:
    nxt, section = _copy_with_section(cfg)
    name = (name or "").strip()
    if not name:
        return nxt
    account_id = normalize_account_id(account_id)
    if account_id == DEFAULT_ACCOUNT_ID and account_id not in _accounts_of(section):
        section["name"] = name
    else:
        section.setdefault("accounts", {}).setdefault(account_id, {})["name"] = name
    return nxt


def _migrate_base_name_to_default_account(cfg: Dict[str, Any]) -> Dict[str, Any]:
    nxt, section = _copy_with_section(cfg)
    name = section.pop("name", None)
    if name:
        default_entry = section.setdefault("accounts", {}).setdefault(DEFAULT_ACCOUNT_ID, {})
        default_entry.setdefault("name", name)
    return nxt


def apply_account_setup_to_config(
    cfg: Optional[Dict[str, Any]],
    account_id: str,
    setup: Dict[str, Any],
) -> Dict[str, Any]:
    """按 setup 输入（name/token/token_file/use_env/base_url/robot_id）写入账户配置。"""
    account_id = normalize_account_id(account_id)
    nxt = apply_account_name_to_config(cfg, account_id, setup.get("name"))
    if account_id != DEFAULT_ACCOUNT_ID:
        nxt = _migrate_base_name_to_default_account(nxt)
    nxt, section = _copy_with_section(nxt)
    section["enabled"] = True

    if account_id == DEFAULT_ACCOUNT_ID:
        target = section
    else:
        target = section.setdefault("accounts", {}).setdefault(account_id, {})
        target["enabled"] = True

    if not setup.get("use_env") or account_id != DEFAULT_ACCOUNT_ID:
        if setup.get("token_file"):
            target["token_file"] = setup["token_file"]
        elif setup.get("token"):
            target["api_token"] = setup["token"]
    if setup.get("base_url"):
        target["base_url"] = setup["base_url"]
    if setup.get("robot_id"):
        target["robot_id"] = int(setup["robot_id"])
    return nxt

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def collect_wechat_status_issues(snapshots: Iterable[Any]) -> List[Dict[str, str]]:
    """检查账户快照中的配置风险（例如访问策略为 open）。"""
    issues: List[Dict[str, str]] = []
    for entry in snapshots:
        if not isinstance(entry, dict):
            continue
        account_id = _as_str(entry.get("account_id")) or "default"
        if entry.get("enabled") is False or entry.get("configured") is not True:
            continue

        if entry.get("dm_policy") == "open":
            issues.append(
                {
                    "channel": "wechat",
                    "account_id": account_id,
                    "kind": "config",
                    "message": 'WeChat dm_policy is "open", allowing any user to message the bot without pairing.',
                    "fix": 'Set channels.wechat.dm_policy to "pairing" or "allowlist" to restrict access.',
                }
            )
        if entry.get("group_policy") == "open":
            issues.append(
                {
                    "channel": "wechat",
                    "account_id": account_id,
                    "kind": "config",
                    "message": 'WeChat group_policy is "open", any group member can talk to the bot.',
                    "fix": 'Set channels.wechat.group_policy to "allowlist" or "pairing" to restrict groups.',
                }
            )
    return issues

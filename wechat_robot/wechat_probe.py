"""连接探测：检测机器人是否在线并可用。"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .wechat_client import WeChatApiError, WeChatRobotClient, WeChatTimeoutError

DEFAULT_PROBE_TIMEOUT_MS = 5000


@dataclass
class WeChatProbeResult:
    ok: bool
    elapsed_ms: int
    robot: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


async def probe_wechat(
    base_url: str,
    api_token: str,
    robot_id: int,
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
) -> WeChatProbeResult:
    if not (api_token or "").strip():
        return WeChatProbeResult(ok=False, error="No API token provided", elapsed_ms=0)
    if not (base_url or "").strip():
        return WeChatProbeResult(ok=False, error="No base URL provided", elapsed_ms=0)

    client = WeChatRobotClient(
        base_url=base_url,
        api_token=api_token,
        robot_id=robot_id,
        timeout_ms=timeout_ms,
    )
    start = time.monotonic()

    def _elapsed() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        resp = await client.get_robot_state()
    except WeChatTimeoutError:
        return WeChatProbeResult(ok=False, error=f"Request timed out after {timeout_ms}ms", elapsed_ms=_elapsed())
    except WeChatApiError as e:
        return WeChatProbeResult(ok=False, error=e.message, elapsed_ms=_elapsed())
    except Exception as e:
        return WeChatProbeResult(ok=False, error=str(e) or e.__class__.__name__, elapsed_ms=_elapsed())

    elapsed_ms = _elapsed()
    robot = resp.get("data")
    if not isinstance(robot, dict):
        return WeChatProbeResult(ok=False, error="Invalid response from WeChat backend", elapsed_ms=elapsed_ms)

    status = robot.get("status")
    if status == "online":
        return WeChatProbeResult(ok=True, robot=robot, elapsed_ms=elapsed_ms)
    return WeChatProbeResult(
        ok=False,
        robot=robot,
        error="Robot is offline" if status == "offline" else "Robot status unknown",
        elapsed_ms=elapsed_ms,
    )

"""
wechat_robot 版本信息

所有版本相关的常量集中在此文件，避免多处维护
"""

__version__ = "0.2.0"
__author__ = "wechat-robot contributors"
__description__ = "基于 wechat-robot-admin-backend REST API 的微信通道适配器。支持轮询收消息、文本/图片/语音发送、配对/白名单访问控制。"

# 插件显示名称（在 AstrBot WebUI 中显示）
ADAPTER_DISPLAY_NAME = "WeChat Robot 微信适配器"

# Logo 文件路径（相对于插件目录）
LOGO_FILE = "logo.svg"

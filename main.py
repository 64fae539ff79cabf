from astrbot.api.star import Context, Star


class WeChatRobotAdapterPlugin(Star):
    """WeChat Robot 微信平台适配器

    基于 wechat-robot-admin-backend REST API 的 AstrBot 微信平台适配器。
    轮询聊天记录接收消息，支持文本/图片/语音发送。

    ## 使用说明

    请在 AstrBot 的平台配置中添加：

    ```yaml
    platform_adapters:
      - type: wechat_robot
        base_url: "http://localhost:9000"
        api_token: "your-token"       # 或设置环境变量 WECHAT_API_TOKEN
        robot_id: 1
        dm_policy: "pairing"          # pairing / allowlist / open / disabled
        allow_from: "wxid_a,wxid_b"
        poll_contact_ids: "wxid_a,12345@chatroom"
    ```

    ## 功能特性

    - 私聊/群聊消息收发（群聊默认只处理 @机器人 的消息）
    - 配对 / 白名单 / 开放 / 禁用 四种访问策略
    - 访客消息自动加安全前缀
    - 长文本自动分段发送
    - 多账户（accounts 配置段）

    ## 注意事项

    - 请确保 wechat-robot-admin-backend 服务已正常运行且机器人在线
    - 未配置 poll_contact_ids 且未开启 poll_all_contacts 时不会接收消息
    """

    def __init__(self, context: Context):
        super().__init__(context)
        # 导入以触发 @register_platform_adapter 装饰器注册
        from .wechat_robot.wechat_platform_adapter import WeChatRobotPlatformAdapter  # noqa: F401

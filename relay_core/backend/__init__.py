"""后端流式对话服务集成层。

该包下的模块负责：
- 后端消息格式的构造与解析 (messages)。
- 向后端申请会话 (session)。
- 驱动单次流式交换的状态机 (exchange)。
"""

from relay_core.backend.exchange import StreamingExchange
from relay_core.backend.session import SessionProvisioner

__all__ = ["SessionProvisioner", "StreamingExchange"]

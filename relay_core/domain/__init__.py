"""领域层模型与协议。

包含：
- models: ChatEvent / StreamingJob / ExchangeState 等数据结构。
- history: 有界线程安全的共享历史缓冲区。
- exceptions: 业务异常类型定义。
"""

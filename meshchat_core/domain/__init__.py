"""领域层模型与协议。

包含：
- models: 统一的 Part / Content / GenerateResult / InboundMessage / Reply 模型。
- conversation: 会话 key 推导与元数据渲染。
- exceptions: 业务异常类型定义。
"""

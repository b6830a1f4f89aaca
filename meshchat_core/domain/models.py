"""统一的消息与结果数据模型。

本模块定义了路由层、会话层与 Provider 之间共享的标准数据结构：

- Part / Content: 一条历史轮次（user 或 model）及其内容片段。
- Candidate / GenerateResult: 从 Provider 解析后的统一响应结果。
- InboundMessage: 传输层投递进来的一条消息，自带一次性回复通道。
- Reply: 写回回复通道的结果，要么是文本（可以为空串），要么是错误。

Provider 适配器（如 GeminiClient）只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional


# 历史轮次角色（与 Gemini contents[].role 对应）
Role = Literal["user", "model"]


@dataclass
class Part:
    """单个内容片段，目前只支持纯文本。"""

    text: str = ""


@dataclass
class Content:
    """一个轮次：角色 + 一个或多个内容片段。"""

    role: Role
    parts: List[Part] = field(default_factory=list)


@dataclass
class Candidate:
    """单个候选回答（目前只使用第一个）。

    content 可能缺失，例如被安全策略拦截时 Provider 只返回 finish_reason。
    """

    content: Optional[Content] = None
    finish_reason: Optional[str] = None


@dataclass
class UsageMetadata:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class GenerateResult:
    """一次 send 调用的最终结果。

    - model: 实际使用的厂商模型名。
    - candidates: 零个或多个候选回答。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    model: str
    candidates: List[Candidate] = field(default_factory=list)
    usage: Optional[UsageMetadata] = None
    raw: Optional[dict] = None


@dataclass
class Reply:
    """写回调用方的结果。

    error 为空时 text 即为回复内容；空串表示模型没有产生任何文本，不是错误。
    """

    text: str = ""
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class InboundMessage:
    """传输层投递的一条消息。

    构造后不可变：metadata 会被复制成只读映射，
    reply_to 只能被写入一次，由处理这条消息的 worker 负责写入。
    """

    text: str
    metadata: Mapping[str, str]
    reply_to: "asyncio.Future[Reply]"

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))

    @classmethod
    def create(cls, text: str, metadata: Optional[Mapping[str, str]] = None) -> "InboundMessage":
        """在当前事件循环上创建一条新消息及其回复通道。"""

        loop = asyncio.get_running_loop()
        return cls(text=text, metadata=dict(metadata or {}), reply_to=loop.create_future())

    def reply(self, reply: Reply) -> bool:
        """写入回复；若回复通道已完成（例如调用方超时取消）则丢弃并返回 False。"""

        if self.reply_to.done():
            return False
        self.reply_to.set_result(reply)
        return True

    def log_fields(self) -> Dict[str, Any]:
        return {"metadata_keys": sorted(self.metadata), "text_len": len(self.text)}

"""Provider 抽象接口。

路由层与会话层不直接依赖具体厂商的 HTTP API，而是依赖此协议：

- ChatBackend: 进程内共享的唯一后端客户端，负责创建会话。
- ChatSession: 单个会话句柄，维护自身历史，负责 send。

这样可以在不改 Dispatcher / SessionWorker 代码的前提下替换后端，测试中也可直接注入 Fake。
"""

from typing import List, Optional, Protocol, Sequence

from meshchat_core.domain.models import Content, GenerateResult, Part


class ChatSession(Protocol):
    """单个对话会话。

    - send(parts): 发送一轮用户输入，成功后由会话自行把本轮记入历史。
    - history(curated): 返回历史轮次；curated=True 时去掉模型输出为空的无效轮次。
    """

    async def send(self, parts: Sequence[Part]) -> GenerateResult:
        ...

    def history(self, curated: bool = True) -> List[Content]:
        ...


class ChatBackend(Protocol):
    """LLM 后端客户端协议。"""

    name: str

    async def create_session(
        self,
        model: str,
        system_instruction: Optional[str] = None,
        history: Optional[Sequence[Content]] = None,
    ) -> ChatSession:
        """创建新会话，history 作为种子历史（按顺序）。"""

        ...

    async def aclose(self) -> None:
        ...

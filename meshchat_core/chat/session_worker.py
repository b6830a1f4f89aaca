"""单会话 worker。

每个会话 key 对应一个 SessionWorker，它独占：
- 一个后端 ChatSession（以及其中累积的历史）；
- 一个收件箱（asyncio.Queue），且只有自己的循环在消费。

消息严格按到达顺序一条一条处理，因此“检查历史长度 → 必要时重建会话 → 发送”
这一序列无需加锁。任何错误都只作为该条消息的回复返回，不会让循环退出。
"""

import asyncio
from typing import Optional

from meshchat_core.config.settings import settings
from meshchat_core.domain.conversation import build_parts
from meshchat_core.domain.exceptions import BusinessError, SendError, SessionCreationError
from meshchat_core.domain.models import GenerateResult, InboundMessage, Reply
from meshchat_core.infrastructure.logging.logger import logger
from meshchat_core.providers.base import ChatBackend, ChatSession

# 收件箱关闭标记
_CLOSE = object()


def extract_text(result: GenerateResult) -> str:
    """取第一个候选中第一个非空文本片段；没有可用文本时返回空串。"""

    if not result.candidates:
        return ""
    content = result.candidates[0].content
    if content is None or not content.parts:
        return ""
    for part in content.parts:
        if part.text:
            return part.text
    return ""


class SessionWorker:
    def __init__(
        self,
        key: str,
        backend: ChatBackend,
        session: ChatSession,
        model: str,
        system_instruction: Optional[str] = None,
        cfg=settings,
    ):
        self.key = key
        self._backend = backend
        self._session = session
        self._model = model
        self._system_instruction = system_instruction
        self._max_history_turns = cfg.max_history_turns
        self._history_keep_from = cfg.history_keep_from
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=cfg.worker_inbox_size)
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[InboundMessage] = None

    @classmethod
    async def create(
        cls,
        key: str,
        backend: ChatBackend,
        model: str,
        system_instruction: Optional[str] = None,
        cfg=settings,
    ) -> "SessionWorker":
        """创建后端会话并启动 worker；会话创建失败时抛出 SessionCreationError。"""

        try:
            session = await backend.create_session(model, system_instruction)
        except Exception as exc:  # noqa: BLE001 - 统一转换为会话创建错误
            raise _creation_error(key, exc) from exc
        worker = cls(key, backend, session, model, system_instruction, cfg=cfg)
        worker.start()
        return worker

    @property
    def session(self) -> ChatSession:
        return self._session

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"session-worker:{self.key}")

    async def deliver(self, message: InboundMessage) -> None:
        """投递消息；收件箱已满时阻塞，直到 worker 取走前面的消息。"""

        await self._inbox.put(message)

    async def close(self) -> None:
        """关闭收件箱：已排队的消息会正常处理完，之后循环退出。"""

        await self._inbox.put(_CLOSE)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            if message is _CLOSE:
                break
            self._current = message
            try:
                reply = await self._process(message)
            except Exception as exc:  # noqa: BLE001 - 错误写回回复通道，不让 worker 退出
                logger.error(
                    f"message failed: {exc}",
                    extra={"extra": {"chat": self.key, "error_type": type(exc).__name__}},
                )
                err = SendError(str(exc), conversation_key=self.key)
                err.__cause__ = exc
                reply = Reply(error=err)
            finally:
                self._current = None
            if not message.reply(reply):
                logger.warning(
                    "reply dropped, caller is gone",
                    extra={"extra": {"chat": self.key}},
                )
        logger.info("chat closed", extra={"extra": {"chat": self.key}})

    def abort(self, error: BaseException) -> None:
        """以 error 回复正在处理以及仍在收件箱中的消息，然后取消循环；用于关闭超时后的收尾。"""

        pending = [self._current] if self._current is not None else []
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if item is not _CLOSE:
                pending.append(item)
        for message in pending:
            message.reply(Reply(error=error))
        if self._task is not None:
            self._task.cancel()

    async def _process(self, message: InboundMessage) -> Reply:
        try:
            await self._maybe_restart()
        except SessionCreationError as exc:
            return Reply(error=exc)

        parts = build_parts(message.text, message.metadata)
        try:
            result = await self._session.send(parts)
        except BusinessError as exc:
            logger.error(
                f"send failed: {exc}",
                extra={"extra": {"chat": self.key, "code": exc.code}},
            )
            return Reply(error=exc)
        return Reply(text=extract_text(result))

    async def _maybe_restart(self) -> None:
        """历史过长时丢弃最早的轮次，用剩余的尾部历史重建会话。"""

        history = self._session.history(curated=True)
        if len(history) <= self._max_history_turns:
            return
        seed = history[self._history_keep_from:]
        try:
            session = await self._backend.create_session(self._model, self._system_instruction, seed)
        except Exception as exc:  # noqa: BLE001 - 保留旧会话，下一条消息会再次尝试
            logger.error(
                f"chat restart failed: {exc}",
                extra={"extra": {"chat": self.key, "history_len": len(history)}},
            )
            raise _creation_error(self.key, exc) from exc
        self._session = session
        logger.info(
            "chat restarted",
            extra={"extra": {"chat": self.key, "history_len": len(history), "kept": len(seed)}},
        )


def _creation_error(key: str, exc: Exception) -> SessionCreationError:
    extra = {"conversation_key": key}
    if isinstance(exc, BusinessError):
        extra["cause_code"] = exc.code
    return SessionCreationError(str(exc), **extra)

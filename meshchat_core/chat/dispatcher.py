"""消息路由。

Dispatcher 是进程内唯一的路由者：
- 所有入站消息都先进入它的收件箱，由单个循环逐条消费；
- 循环独占 key -> SessionWorker 注册表，因此查找/插入无需加锁；
- 首次见到某个 key 时同步创建 worker，再把消息转交过去。

注册表条目目前不会被回收：worker 一旦创建就存活到进程结束。
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from meshchat_core.config.settings import settings
from meshchat_core.domain.conversation import conversation_key
from meshchat_core.domain.exceptions import (
    BusinessError,
    DispatcherClosedError,
    RoutingError,
    SessionCreationError,
)
from meshchat_core.domain.models import InboundMessage, Reply
from meshchat_core.infrastructure.logging.logger import logger
from meshchat_core.providers.base import ChatBackend
from meshchat_core.chat.session_worker import SessionWorker

WorkerFactory = Callable[[str], Awaitable[SessionWorker]]

# 收件箱停止标记
_STOP = object()


class Dispatcher:
    def __init__(
        self,
        backend: ChatBackend,
        model: str,
        system_instruction: Optional[str] = None,
        worker_factory: Optional[WorkerFactory] = None,
        cfg=settings,
    ):
        self._backend = backend
        self._model = model
        self._system_instruction = system_instruction
        self._settings = cfg
        self._worker_factory = worker_factory or self._create_worker
        self._workers: Dict[str, SessionWorker] = {}
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._handoff: Optional[InboundMessage] = None

    def conversation_keys(self) -> List[str]:
        return list(self._workers)

    def worker(self, key: str) -> Optional[SessionWorker]:
        return self._workers.get(key)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="dispatcher")

    async def route(self, message: InboundMessage) -> bool:
        """接收一条消息；处理结果异步写到消息自己的回复通道。

        关闭开始后不再接收新消息，直接回复 DispatcherClosedError 并返回 False。
        """

        if self._closed:
            message.reply(Reply(error=DispatcherClosedError()))
            return False
        await self._inbox.put(message)
        return True

    async def ask(
        self,
        text: str,
        metadata: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """路由一条消息并等待回复；回复为错误时直接抛出该错误。"""

        message = InboundMessage.create(text, metadata)
        await self.route(message)
        reply = await asyncio.wait_for(message.reply_to, timeout)
        if reply.error is not None:
            raise reply.error
        return reply.text

    async def stop(self) -> None:
        """停止接收新消息，处理完已入队的消息后关闭所有 worker。"""

        if self._closed:
            return
        self._closed = True
        if self._task is None:
            return
        await self._inbox.put(_STOP)
        await self._task

    def abort(self) -> None:
        """关闭超时后的收尾：所有尚未回复的消息都以 DispatcherClosedError 回复。

        随后取消 Dispatcher 与各 worker 的循环。
        """

        self._closed = True
        error = DispatcherClosedError()
        pending = [self._handoff] if self._handoff is not None else []
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if item is not _STOP:
                pending.append(item)
        for message in pending:
            message.reply(Reply(error=error))
        if self._task is not None:
            self._task.cancel()
        for worker in self._workers.values():
            worker.abort(error)

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            if message is _STOP:
                break
            # 被取消时保留 _handoff，供 abort 回复
            self._handoff = message
            await self._dispatch(message)
            self._handoff = None

        for name, worker in self._workers.items():
            logger.info("closing chat channel", extra={"extra": {"chat": name}})
            await worker.close()
        await asyncio.gather(*(w.wait_closed() for w in self._workers.values()))

    async def _dispatch(self, message: InboundMessage) -> None:
        try:
            key = conversation_key(message.metadata)
        except RoutingError as exc:
            logger.warning(str(exc), extra={"extra": message.log_fields()})
            message.reply(Reply(error=exc))
            return

        worker = self._workers.get(key)
        if worker is None:
            logger.info("creating new chat", extra={"extra": {"chat": key}})
            try:
                worker = await self._worker_factory(key)
            except Exception as exc:  # noqa: BLE001 - 创建失败只影响这一条消息
                logger.error(
                    f"failed to create chat: {exc}",
                    extra={"extra": {"chat": key}},
                )
                if not isinstance(exc, BusinessError):
                    exc = SessionCreationError(str(exc), conversation_key=key)
                message.reply(Reply(error=exc))
                return
            self._workers[key] = worker
        await worker.deliver(message)

    async def _create_worker(self, key: str) -> SessionWorker:
        return await SessionWorker.create(
            key,
            self._backend,
            self._model,
            self._system_instruction,
            cfg=self._settings,
        )

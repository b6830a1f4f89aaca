"""对外服务模块。

ChatService 把后端客户端与 Dispatcher 组合在一起，
负责进程级生命周期（启动、优雅关闭）并提供简化的 ask 接口供传输层调用。
"""

import asyncio
from typing import Dict, Optional

from meshchat_core.config.settings import settings
from meshchat_core.chat.dispatcher import Dispatcher
from meshchat_core.infrastructure.logging.logger import logger
from meshchat_core.providers import create_backend
from meshchat_core.providers.base import ChatBackend


class ChatService:
    def __init__(
        self,
        backend: Optional[ChatBackend] = None,
        system_instruction: Optional[str] = None,
        cfg=settings,
    ):
        self._settings = cfg
        self._backend = backend or create_backend(cfg=cfg)
        self._system_instruction = system_instruction
        self._dispatcher: Optional[Dispatcher] = None

    @property
    def dispatcher(self) -> Dispatcher:
        if self._dispatcher is None:
            raise RuntimeError("ChatService is not started")
        return self._dispatcher

    async def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._dispatcher = Dispatcher(
            self._backend,
            self._settings.default_model,
            self._system_instruction,
            cfg=self._settings,
        )
        self._dispatcher.start()
        logger.info(
            "chat service started",
            extra={"extra": {"provider": self._backend.name, "model": self._settings.default_model}},
        )

    async def stop(self) -> None:
        """在 shutdown_timeout 内等待已入队消息处理完毕，然后关闭后端客户端。"""

        try:
            if self._dispatcher is not None:
                await asyncio.wait_for(self._dispatcher.stop(), self._settings.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "graceful shutdown did not complete in time",
                extra={"extra": {"timeout": self._settings.shutdown_timeout}},
            )
            self._dispatcher.abort()
        finally:
            await self._backend.aclose()
        logger.info("chat service stopped")

    async def ask(self, text: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """发送一条消息并等待回复文本。

        Raises:
            domain.exceptions 中定义的异常；设置了 request_timeout 时可能抛出 asyncio.TimeoutError。
        """
        return await self.dispatcher.ask(text, metadata, timeout=self._settings.request_timeout)

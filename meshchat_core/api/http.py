"""HTTP 传输层。

GET /?msg=<文本>&<元数据...>
- msg 之外的所有查询参数都作为消息元数据（channel、node_id、snr 等）；
- 成功时返回纯文本回复，回复可能为空串。
"""

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from meshchat_core.api.service import ChatService
from meshchat_core.domain.exceptions import BusinessError, DispatcherClosedError, RoutingError
from meshchat_core.infrastructure.logging.logger import logger


def create_app(service: ChatService) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        logger.info("shutdown started")
        await service.stop()
        logger.info("shutdown complete")

    app = FastAPI(title="meshchat", lifespan=lifespan)
    app.state.chat_service = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "request completed",
            extra={"extra": {
                "method": request.method,
                "path": request.url.path,
                "query": dict(request.query_params),
                "status": response.status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            }},
        )
        return response

    @app.get("/favicon.ico")
    async def favicon():
        return Response(status_code=404)

    @app.get("/")
    async def chat(request: Request):
        metadata = dict(request.query_params)
        msg = metadata.pop("msg", "")
        if not msg:
            return PlainTextResponse("msg query parameter is required", status_code=400)
        try:
            text = await service.ask(msg, metadata)
        except (RoutingError, DispatcherClosedError) as exc:
            return PlainTextResponse(exc.message, status_code=exc.http_status)
        except BusinessError as exc:
            logger.error(f"failed to send message: {exc}", extra={"extra": {"code": exc.code}})
            return PlainTextResponse("failed to get response from AI", status_code=500)
        except asyncio.TimeoutError:
            logger.error("timed out waiting for reply", extra={"extra": {"metadata": metadata}})
            return PlainTextResponse("timed out waiting for response from AI", status_code=504)
        return PlainTextResponse(text)

    return app

"""命令行入口：python -m meshchat_core --addr :8080 --token <key> --system system.txt"""

import argparse
import math
import sys
from typing import Optional, Sequence, Tuple

import uvicorn

from meshchat_core.api.http import create_app
from meshchat_core.api.service import ChatService
from meshchat_core.config.settings import settings
from meshchat_core.infrastructure.logging.logger import logger
from meshchat_core.prompts import load_system_instruction


def parse_addr(addr: str, default_host: str) -> Tuple[str, int]:
    """解析 host:port，host 可以省略（如 ":8080"）。"""

    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"invalid address {addr!r}, expected host:port")
    return host or default_host, int(port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meshchat", description=__doc__)
    parser.add_argument(
        "--addr",
        default=f":{settings.port}",
        help="TCP host:port to listen on",
    )
    parser.add_argument("--token", default=None, help="Google AI token (defaults to GEMINI_API_KEY)")
    parser.add_argument(
        "--system",
        default=settings.system_instruction_path,
        help="Path to system instructions file",
    )
    parser.add_argument("--model", default=settings.default_model, help="Logical or provider model name")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    token = args.token or settings.gemini_api_key
    if not token:
        logger.error("token is required")
        return 1
    try:
        host, port = parse_addr(args.addr, settings.host)
    except ValueError as exc:
        logger.error(str(exc))
        return 1

    try:
        system_instruction = load_system_instruction(args.system)
    except OSError as exc:
        logger.error(
            "failed to read system instruction file",
            extra={"extra": {"path": args.system, "error": str(exc)}},
        )
        return 1

    cfg = settings.model_copy(update={
        "gemini_api_key": token,
        "default_model": args.model,
        "host": host,
        "port": port,
    })
    app = create_app(ChatService(system_instruction=system_instruction, cfg=cfg))
    logger.info("starting server", extra={"extra": {"addr": f"{host}:{port}"}})
    uvicorn.run(
        app,
        host=host,
        port=port,
        timeout_graceful_shutdown=math.ceil(cfg.shutdown_timeout),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

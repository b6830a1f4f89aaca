"""系统指令加载工具。

系统指令文件是可选的：文件不存在时记录警告并返回 None，
会话将在没有系统指令的情况下创建；其他读取错误直接抛出。
"""

from pathlib import Path
from typing import Optional

from meshchat_core.infrastructure.logging.logger import logger


def load_system_instruction(path: str | Path) -> Optional[str]:
    """读取系统指令文本；空文件视为没有系统指令。"""

    fname = Path(path).expanduser()
    try:
        content = fname.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning(
            "system instruction file not found, proceeding without it",
            extra={"extra": {"path": str(fname)}},
        )
        return None
    logger.info("loaded system instructions", extra={"extra": {"path": str(fname)}})
    return content or None

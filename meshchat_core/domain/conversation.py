"""会话 key 推导与元数据渲染。

会话 key 决定消息落到哪个 SessionWorker：
- 元数据中有 channel 且不是私聊哨兵值 "DM" 时，使用 channel；
- 否则退回 node_id；
- 两者都没有时无法路由，抛出 RoutingError。
"""

from typing import List, Mapping, Optional

from .exceptions import RoutingError
from .models import Part

DIRECT_MESSAGE_CHANNEL = "DM"


def conversation_key(metadata: Optional[Mapping[str, str]]) -> str:
    metadata = metadata or {}
    key = metadata.get("channel") or ""
    if key == DIRECT_MESSAGE_CHANNEL or not key:
        key = metadata.get("node_id") or ""
    if not key:
        raise RoutingError()
    return key


def render_metadata(metadata: Mapping[str, str]) -> str:
    """按映射自身的迭代顺序渲染，每行一个 `KEY: value`。"""

    return "".join(f"{k.upper()}: {v}\n" for k, v in metadata.items())


def build_parts(text: str, metadata: Optional[Mapping[str, str]] = None) -> List[Part]:
    """构造发往后端的内容片段：元数据片段（若有）在前，正文在后。"""

    parts: List[Part] = []
    if metadata:
        parts.append(Part(text=render_metadata(metadata)))
    parts.append(Part(text=text))
    return parts

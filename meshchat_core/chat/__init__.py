"""路由与会话 actor。"""

from meshchat_core.chat.dispatcher import Dispatcher
from meshchat_core.chat.session_worker import SessionWorker, extract_text

__all__ = ["Dispatcher", "SessionWorker", "extract_text"]

"""
入站消息过滤 - 去重、群聊触发判断、@ 提及清理
"""
import re
import threading
import time
from typing import Callable, Dict, Iterable, Optional

SEEN_TTL_SECONDS = 10 * 60

QUESTION_WORDS = ("why", "how", "what", "when", "where", "who", "help")
CHINESE_REQUEST_VERBS = (
    "帮", "麻烦", "请", "能否", "可以", "解释", "看看", "排查",
    "分析", "总结", "写", "改", "修", "查", "对比", "翻译",
)
BOT_NAMES = ("alen", "moltbot", "bot", "助手", "智能体")

_MENTION_RE = re.compile(r"@_user_\d+\s*")


class MessageDeduplicator:
    """按消息 ID 去重, 条目超过 TTL 后过期

    平台会重投递事件, 同一条消息在 TTL 内只处理一次。
    """

    def __init__(self, ttl_seconds: float = SEEN_TTL_SECONDS, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def is_duplicate(self, message_id: str) -> bool:
        now = self._clock()
        with self._lock:
            expired = [mid for mid, seen_at in self._seen.items() if now - seen_at > self.ttl_seconds]
            for mid in expired:
                del self._seen[mid]

            if message_id in self._seen:
                return True
            self._seen[message_id] = now
            return False

    def __len__(self) -> int:
        return len(self._seen)


def should_respond_in_group(text: str, mentions: Optional[Iterable] = None) -> bool:
    """群聊中是否应当回复"""
    # 被 @ 了
    if mentions and len(list(mentions)) > 0:
        return True

    text = text.strip()
    if text.endswith("?") or text.endswith("？"):
        return True

    lower_text = text.lower()
    if any(word in lower_text for word in QUESTION_WORDS):
        return True

    if any(verb in text for verb in CHINESE_REQUEST_VERBS):
        return True

    return any(lower_text.startswith(name) for name in BOT_NAMES)


def strip_mentions(text: str) -> str:
    """移除 @_user_N 形式的提及"""
    return _MENTION_RE.sub("", text).strip()

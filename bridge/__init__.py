"""
Bridge - forwards chat messages to the Moltbot gateway and streams replies back.
"""
from .aggregator import (
    AggregationTimeout,
    StreamAggregator,
    SingleReplyAggregator,
    build_aggregator,
)
from .replier import TurnReplier
from .bridge import Bridge, ERROR_REPLY_PREFIX

__all__ = [
    'Bridge',
    'ERROR_REPLY_PREFIX',
    'TurnReplier',
    'AggregationTimeout',
    'StreamAggregator',
    'SingleReplyAggregator',
    'build_aggregator',
]

"""
Moltbot gateway client - request/response and event subscription over one WebSocket.
"""
from .protocol import GatewayProtocol, MessageType, RequestMethod, GatewayEvent, AgentStream
from .connection import GatewayConnection
from .events import EventRegistry
from .agent_run import AgentRun
from .client import GatewayClient
from .errors import (
    GatewayError,
    TransportError,
    HandshakeTimeout,
    AuthRejected,
    RequestTimeout,
    InvokeFailed,
    DecodeError,
)

__all__ = [
    'GatewayProtocol',
    'GatewayConnection',
    'GatewayClient',
    'EventRegistry',
    'AgentRun',
    'MessageType',
    'RequestMethod',
    'GatewayEvent',
    'AgentStream',
    'GatewayError',
    'TransportError',
    'HandshakeTimeout',
    'AuthRejected',
    'RequestTimeout',
    'InvokeFailed',
    'DecodeError',
]

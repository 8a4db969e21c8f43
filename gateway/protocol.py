"""
Gateway protocol definition - WebSocket frames spoken with the Moltbot gateway.

Three frame kinds share one socket: requests sent by us, responses correlated
to them by id, and events pushed by the gateway.
"""
import json
import platform
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DecodeError

PROTOCOL_VERSION = 3
CLIENT_VERSION = "0.2.0"
CLIENT_ID = "gateway-client"
USER_AGENT = "moltbot-feishu-bridge-py"


class MessageType(str, Enum):
    """High-level frame type."""
    REQUEST = "req"          # Client request
    RESPONSE = "res"         # Gateway response
    EVENT = "event"          # Gateway-side event push


class RequestMethod(str, Enum):
    """Request methods used by the bridge."""
    CONNECT = "connect"      # Authentication after the challenge
    AGENT = "agent"          # Start an agent turn


class GatewayEvent(str, Enum):
    """Event names the bridge subscribes to."""
    CONNECT_CHALLENGE = "connect.challenge"
    AGENT = "agent"


class AgentStream(str, Enum):
    """Stream tag carried by ``agent`` events."""
    ASSISTANT = "assistant"
    LIFECYCLE = "lifecycle"


LIFECYCLE_END = "end"


class _WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(populate_by_name=True)


# ============ Envelopes ============

class ErrorPayload(BaseModel):
    code: Union[str, int, None] = None
    message: str = ""


class RequestMessage(BaseModel):
    """Request envelope."""
    type: MessageType = MessageType.REQUEST
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ResponseMessage(BaseModel):
    """Response envelope, matched to its request by ``id``."""
    type: MessageType = MessageType.RESPONSE
    id: str
    ok: bool = False
    payload: Optional[Any] = None
    error: Optional[ErrorPayload] = None

    def error_message(self, default: str) -> str:
        if self.error and self.error.message:
            return self.error.message
        return default


class EventMessage(BaseModel):
    """Event envelope."""
    type: MessageType = MessageType.EVENT
    event: str
    payload: Optional[Dict[str, Any]] = None


# ============ Request params ============

class ClientInfo(_WireModel):
    id: str = CLIENT_ID
    version: str = CLIENT_VERSION
    platform: str = Field(default_factory=lambda: platform.system().lower())
    mode: str = "backend"


class AuthInfo(_WireModel):
    token: str


class ConnectParams(_WireModel):
    """Parameters of the authentication request sent after the challenge."""
    min_protocol: int = Field(default=PROTOCOL_VERSION, alias="minProtocol")
    max_protocol: int = Field(default=PROTOCOL_VERSION, alias="maxProtocol")
    client: ClientInfo = Field(default_factory=ClientInfo)
    role: str = "operator"
    scopes: List[str] = Field(default_factory=lambda: ["operator.read", "operator.write"])
    auth: AuthInfo
    locale: str = "zh-CN"
    user_agent: str = Field(default=USER_AGENT, alias="userAgent")


class AgentParams(_WireModel):
    """Parameters of an agent invocation."""
    message: str
    agent_id: str = Field(alias="agentId")
    session_key: str = Field(alias="sessionKey")
    deliver: bool = False
    idempotency_key: str = Field(
        default_factory=lambda: str(uuid.uuid4()), alias="idempotencyKey"
    )


# ============ Payloads ============

class AgentAcceptedPayload(_WireModel):
    run_id: str = Field(alias="runId", min_length=1)


class AgentEventPayload(_WireModel):
    run_id: str = Field(alias="runId")
    stream: str = ""
    data: Optional[Dict[str, Any]] = None


class AssistantDelta(_WireModel):
    delta: str = ""


class LifecycleData(_WireModel):
    phase: str = ""


class GatewayProtocol:
    """Helpers for building and parsing gateway frames."""

    @staticmethod
    def create_request(
        method: Union[RequestMethod, str],
        params: Union[BaseModel, Dict[str, Any], None] = None,
        request_id: Optional[str] = None,
    ) -> RequestMessage:
        if isinstance(params, BaseModel):
            params = params.model_dump(by_alias=True, exclude_none=True)
        method_name = method.value if isinstance(method, RequestMethod) else method
        kwargs: Dict[str, Any] = {"method": method_name, "params": params or {}}
        if request_id:
            kwargs["id"] = request_id
        return RequestMessage(**kwargs)

    @staticmethod
    def encode(message: BaseModel) -> str:
        return message.model_dump_json(by_alias=True, exclude_none=True)

    @staticmethod
    def parse_message(data: Union[str, bytes]) -> Optional[Union[ResponseMessage, EventMessage]]:
        """Parse an inbound frame.

        Returns ``None`` for frames that are neither responses nor events;
        raises ``DecodeError`` when the frame is not valid JSON or does not
        fit its declared type.
        """
        try:
            raw = json.loads(data)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"invalid JSON frame: {e}") from e
        if not isinstance(raw, dict):
            raise DecodeError("frame is not a JSON object")

        msg_type = raw.get("type")
        try:
            if msg_type == MessageType.RESPONSE.value:
                return ResponseMessage.model_validate(raw)
            if msg_type == MessageType.EVENT.value:
                return EventMessage.model_validate(raw)
        except ValidationError as e:
            raise DecodeError(f"malformed '{msg_type}' frame: {e}") from e
        return None

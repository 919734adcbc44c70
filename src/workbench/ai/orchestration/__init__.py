"""Turn loop orchestration: streaming parse, action dispatch and the controller."""

from .cancellation import CancellationToken
from .controller import (
    ControllerConfig,
    LoopState,
    TurnController,
    TurnListener,
    TurnResult,
    TurnState,
    TurnStatus,
)
from .dispatcher import ActionDispatcher
from .model_call import AgentModel, build_messages
from .response_parser import parse_structured_response
from .stream_fields import extract_string_array, extract_string_field, partial_update
from .types import (
    Action,
    ActionType,
    ConversationEntry,
    DispatchOutcome,
    RiskAssessment,
    StreamUpdate,
    StructuredResponse,
)

__all__ = [
    "Action",
    "ActionDispatcher",
    "ActionType",
    "AgentModel",
    "CancellationToken",
    "ControllerConfig",
    "ConversationEntry",
    "DispatchOutcome",
    "LoopState",
    "RiskAssessment",
    "StreamUpdate",
    "StructuredResponse",
    "TurnController",
    "TurnListener",
    "TurnResult",
    "TurnState",
    "TurnStatus",
    "build_messages",
    "extract_string_array",
    "extract_string_field",
    "parse_structured_response",
    "partial_update",
]

"""
module-chat-events: Conversation event protocol for streamed coaching modules.

This library provides an append-only, strictly ordered event log per
session, a deterministic reducer that folds it into renderable state, and
the streaming turn processor that turns model output into live wire frames
and durable events. Structured outcomes are resolved exactly once, with
idempotent replay and conflict detection, and module completion is a
terminal, idempotent transition.

Example:
    >>> import asyncio
    >>> from module_chat_events import EventLog, InMemoryEventStore, ProgressTracker
    >>> log = EventLog(InMemoryEventStore())
    >>> session = asyncio.run(log.create_session("user-1", module_number=1))
    >>> asyncio.run(ProgressTracker(log).set_progress(session.session_id, 10)).exposed_percent
    10
"""

__version__ = "1.0.0"

# Core data models
from module_chat_events.models import (
    ConversationEvent,
    ErrorEntry,
    Session,
    SessionPhase,
    ModuleChatEventsError,
    StorageError,
    ValidationError,
    NotFoundError,
    InvalidOptionError,
    ProtocolViolationError,
    TurnInProgressError,
    ConflictError,
)

# Storage abstractions
from module_chat_events.storage import (
    EventStore,
    ErrorStorage,
    InMemoryEventStore,
    InMemoryErrorStorage,
)

# Configuration
from module_chat_events.config import ProtocolSettings

# Error logging
from module_chat_events.error_log import ErrorLog

# Conversation event contracts and reducer
from module_chat_events.conversation import (
    MESSAGE_USER,
    MESSAGE_ASSISTANT,
    STRUCTURED_OUTCOMES_ADDED,
    OUTCOME_SELECTED,
    MODULE_PROGRESS,
    MODULE_COMPLETE,
    CONVERSATION_EVENT_TYPES,
    MIN_PROGRESS,
    MAX_PROGRESS,
    MessagePayload,
    OutcomeOption,
    StructuredOutcomesAddedPayload,
    OutcomeSelectedPayload,
    ProgressPayload,
    ModuleSummary,
    ModuleCompletePayload,
    ConversationAnomaly,
    TranscriptEntry,
    OutcomeSet,
    ReducedConversationState,
    reduce_conversation_events,
)

# Event log
from module_chat_events.event_log import EventLog

# Tools and producers
from module_chat_events.tools import (
    TOOL_DECLARATIONS,
    AppendOutcomes,
    SetProgress,
    CompleteModule,
    ToolInvocation,
    parse_tool_invocation,
)
from module_chat_events.producer import (
    ContentFragment,
    ToolCall,
    OutputComplete,
    ModelOutputProducer,
    FallbackProducer,
)

# Outcomes, progress and completion
from module_chat_events.outcomes import (
    DEV_TEST_OPTIONS,
    OutcomeCoordinator,
    SelectionResult,
)
from module_chat_events.progress import (
    ProgressTracker,
    ProgressUpdate,
    CompletionResult,
)

# Streaming transport
from module_chat_events.transport import (
    TextDeltaFrame,
    ToolExecutedFrame,
    DoneFrame,
    ErrorFrame,
    StreamChannel,
    StreamAccumulator,
    encode_frame,
    decode_frame,
    accumulate,
)

# Turn processing
from module_chat_events.turns import (
    TurnProcessor,
    TurnResult,
    TurnState,
    ToolOutcome,
)

# Command surface
from module_chat_events.commands import (
    ModuleChatCommands,
    PresentOutcomesResponse,
    SelectOutcomeResponse,
    CompleteModuleResponse,
    ReadStateResponse,
    error_status,
    error_body,
)

__all__ = [
    # Models
    "ConversationEvent",
    "ErrorEntry",
    "Session",
    "SessionPhase",
    # Exceptions
    "ModuleChatEventsError",
    "StorageError",
    "ValidationError",
    "NotFoundError",
    "InvalidOptionError",
    "ProtocolViolationError",
    "TurnInProgressError",
    "ConflictError",
    # Storage
    "EventStore",
    "ErrorStorage",
    "InMemoryEventStore",
    "InMemoryErrorStorage",
    # Configuration and error log
    "ProtocolSettings",
    "ErrorLog",
    # Conversation contracts
    "MESSAGE_USER",
    "MESSAGE_ASSISTANT",
    "STRUCTURED_OUTCOMES_ADDED",
    "OUTCOME_SELECTED",
    "MODULE_PROGRESS",
    "MODULE_COMPLETE",
    "CONVERSATION_EVENT_TYPES",
    "MIN_PROGRESS",
    "MAX_PROGRESS",
    "MessagePayload",
    "OutcomeOption",
    "StructuredOutcomesAddedPayload",
    "OutcomeSelectedPayload",
    "ProgressPayload",
    "ModuleSummary",
    "ModuleCompletePayload",
    "ConversationAnomaly",
    "TranscriptEntry",
    "OutcomeSet",
    "ReducedConversationState",
    "reduce_conversation_events",
    # Event log
    "EventLog",
    # Tools and producers
    "TOOL_DECLARATIONS",
    "AppendOutcomes",
    "SetProgress",
    "CompleteModule",
    "ToolInvocation",
    "parse_tool_invocation",
    "ContentFragment",
    "ToolCall",
    "OutputComplete",
    "ModelOutputProducer",
    "FallbackProducer",
    # Outcomes and progress
    "DEV_TEST_OPTIONS",
    "OutcomeCoordinator",
    "SelectionResult",
    "ProgressTracker",
    "ProgressUpdate",
    "CompletionResult",
    # Transport
    "TextDeltaFrame",
    "ToolExecutedFrame",
    "DoneFrame",
    "ErrorFrame",
    "StreamChannel",
    "StreamAccumulator",
    "encode_frame",
    "decode_frame",
    "accumulate",
    # Turns
    "TurnProcessor",
    "TurnResult",
    "TurnState",
    "ToolOutcome",
    # Commands
    "ModuleChatCommands",
    "PresentOutcomesResponse",
    "SelectOutcomeResponse",
    "CompleteModuleResponse",
    "ReadStateResponse",
    "error_status",
    "error_body",
]

"""AI agents package."""

from ledger_assistant.agents.command_agent import (
    CommandInterpreter,
    CommandValidationError,
    InterpretationResult,
)
from ledger_assistant.agents.llm_client import (
    LLMClient,
    LLMConfigError,
    LLMError,
    LLMNetworkError,
    LLMTimeoutError,
    UnexpectedContentTypeError,
    UpstreamAPIError,
    create_llm_client,
    extract_message_content,
    parse_retry_after,
)

__all__ = [
    "CommandInterpreter",
    "CommandValidationError",
    "InterpretationResult",
    "LLMClient",
    "LLMConfigError",
    "LLMError",
    "LLMNetworkError",
    "LLMTimeoutError",
    "UnexpectedContentTypeError",
    "UpstreamAPIError",
    "create_llm_client",
    "extract_message_content",
    "parse_retry_after",
]

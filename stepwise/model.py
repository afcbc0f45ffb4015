from typing import TYPE_CHECKING, Optional

from stepwise.execution import Message
from stepwise.tools import Tool

if TYPE_CHECKING:
    from stepwise.config import ModelSettings


class ModelAdaptor:
    """Boundary to an LLM backend.

    Implementations translate the conversation to their provider's format
    and raise ModelError (with one of the MODEL_ERROR_TYPES) on failure, so
    that retry classification never depends on transport details.
    """

    provider: str = ""
    model: str = ""

    async def call(
        self,
        messages: list[Message],
        tools: list[Tool],
        settings: Optional["ModelSettings"] = None,
        **kwargs,
    ) -> Message:
        """Call the model with messages and available tools.

        Returns the assistant message, with ``tool_calls`` set when the
        model asked for tools.
        """
        raise NotImplementedError

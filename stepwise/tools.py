import json
import logging
import re
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel

from stepwise.execution import ToolResult

logger = logging.getLogger(__name__)


class ToolInput(BaseModel):
    """Subclass this for tool-specific input validation."""


class Tool:
    name: str
    description: str
    input_model: type[BaseModel]
    # A successful call to a terminal tool ends the run (see task_done).
    terminal: bool = False

    def schema(self) -> dict:
        """Return JSON schema from Pydantic model."""
        return self.input_model.model_json_schema()

    def export_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.schema(),
        }

    def parameters(self) -> list[dict]:
        """Flattened view of the declared parameters."""
        schema = self.schema()
        required = set(schema.get("required", []))
        params = []
        for param_name, prop in schema.get("properties", {}).items():
            param = {
                "name": param_name,
                "type": prop.get("type", "any"),
                "description": prop.get("description", ""),
                "required": param_name in required,
            }
            if "enum" in prop:
                param["enum"] = list(prop["enum"])
            params.append(param)
        return params

    async def execute(self, **kwargs) -> Union[str, ToolResult]:
        """Execute tool. Always async; sync tools wrap sync code.

        Pydantic validates inputs before this is called. Raise ToolError
        (or a subclass) to report a failure with a specific code.
        """
        raise NotImplementedError


_VALUE_PATTERN = r'("(?:[^"\\]|\\.)*"|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null)'


def decode_arguments(
    raw: Union[str, dict, None],
    allowed: Optional[Iterable[str]] = None,
) -> dict[str, Any]:
    """Decode tool-call arguments sent by a model.

    Strict JSON first. Models occasionally emit truncated or otherwise
    malformed JSON; in that case scan for ``"key": value`` pairs, keeping
    only keys listed in ``allowed``. Whatever cannot be recovered is left
    out, and argument validation reports it to the model.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw

    text = raw.strip()
    if not text:
        return {}

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Malformed tool arguments ({e}), attempting key-value recovery")
    else:
        if isinstance(decoded, dict):
            return decoded
        logger.warning(f"Tool arguments decoded to {type(decoded).__name__}, expected object")

    recovered: dict[str, Any] = {}
    for key in allowed or ():
        match = re.search(rf'"{re.escape(key)}"\s*:\s*{_VALUE_PATTERN}', text)
        if match is None:
            continue
        try:
            recovered[key] = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue

    if not recovered:
        logger.warning(f"No arguments could be recovered from: {text[:200]}")
    return recovered

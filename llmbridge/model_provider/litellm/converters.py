"""Converters from canonical requests to the gateway's two wire shapes.

- Chat Completions (``/chat/completions``): ``messages`` with role/content,
  assistant ``tool_calls`` and ``tool`` result messages.
- Responses (``/responses``): a flat ``input`` item list plus a separate
  ``instructions`` string; tool calls and results are ``function_call`` /
  ``function_call_output`` items.

Translation never raises for well-formed canonical input. Content a shape
cannot carry (images in the Responses input) is dropped.
"""

import base64
import json
import re
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..types import ChatRequest, FunctionCall, Message, Role, ToolChoice, ToolSchema
from .env import MODE_RESPONSES

# Opaque capability lookup: (parameter name, model id) -> supported?
ParameterSupport = Callable[[str, str], bool]

CHAT_COMPLETIONS_ENDPOINT = "/chat/completions"
RESPONSES_ENDPOINT = "/responses"

# Responses-shape function call ids must carry this prefix
CALL_ID_PREFIX = "fc_"

SAMPLING_PARAMETERS = ("temperature", "top_p", "frequency_penalty", "presence_penalty", "stop")

_SCHEMA_KEYWORDS = frozenset({
    "type", "properties", "required", "additionalProperties", "description",
    "enum", "default", "items", "minLength", "maxLength", "minimum",
    "maximum", "pattern", "format",
})

_INTEGER_NAME_MARKERS = (
    "id", "limit", "count", "index", "size", "offset", "length",
    "results_limit", "maxresults", "debugsessionid", "cellid",
)


def is_responses_mode(mode: Optional[str]) -> bool:
    """Check if a gateway mode selects the Responses wire shape."""
    return (mode or "").lower() == MODE_RESPONSES


def endpoint_for_mode(mode: Optional[str]) -> str:
    """Endpoint path for a mode. Unknown modes use chat completions."""
    return RESPONSES_ENDPOINT if is_responses_mode(mode) else CHAT_COMPLETIONS_ENDPOINT


# ==================== Tool Sanitization ====================

def sanitize_function_name(name: Any) -> str:
    """Coerce a tool name into ``[A-Za-z][A-Za-z0-9_-]{0,63}``."""
    if not isinstance(name, str) or not name:
        return "tool"
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "_", name)
    if not re.match(r"^[a-zA-Z]", sanitized):
        sanitized = f"tool_{sanitized}"
    sanitized = re.sub(r"_+", "_", sanitized)
    return sanitized[:64]


def _is_integer_like_name(prop_name: Optional[str]) -> bool:
    if not prop_name:
        return False
    lowered = prop_name.lower()
    return any(m in lowered for m in _INTEGER_NAME_MARKERS) or lowered.endswith("_id")


def sanitize_schema(schema: Any, prop_name: Optional[str] = None) -> Dict[str, Any]:
    """Reduce a JSON schema to the subset gateways reliably accept.

    Composite ``anyOf``/``oneOf``/``allOf`` collapse to their first string
    branch (or first branch), unknown keywords are pruned, and a missing
    ``type`` becomes ``object``.
    """
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}

    for composite in ("anyOf", "oneOf", "allOf"):
        branch = schema.get(composite)
        if isinstance(branch, list) and branch:
            preferred = next(
                (b for b in branch if isinstance(b, dict) and b.get("type") == "string"),
                branch[0],
            )
            schema = dict(preferred) if isinstance(preferred, dict) else {}
            break

    out = {k: v for k, v in schema.items() if k in _SCHEMA_KEYWORDS}
    schema_type = out.setdefault("type", "object")

    if schema_type == "number" and _is_integer_like_name(prop_name):
        out["type"] = schema_type = "integer"

    if schema_type == "object":
        props = out.get("properties")
        if not isinstance(props, dict):
            props = {}
        out["properties"] = {k: sanitize_schema(v, k) for k, v in props.items()}

        required = out.get("required")
        if isinstance(required, list):
            out["required"] = [r for r in required if isinstance(r, str)]
        elif required is not None:
            out["required"] = []

        if "additionalProperties" in out and not isinstance(out["additionalProperties"], bool):
            del out["additionalProperties"]
    elif schema_type == "array":
        items = out.get("items")
        if isinstance(items, list) and items:
            out["items"] = sanitize_schema(items[0])
        elif isinstance(items, dict):
            out["items"] = sanitize_schema(items)
        else:
            out["items"] = {"type": "string"}

    return out


def tool_schema_to_chat(schema: ToolSchema) -> Dict[str, Any]:
    """Convert a ToolSchema to a chat-completions function tool."""
    return {
        "type": "function",
        "function": {
            "name": sanitize_function_name(schema.name),
            "description": schema.description if isinstance(schema.description, str) else "",
            "parameters": sanitize_schema(schema.parameters or {"type": "object", "properties": {}}),
        },
    }


def tool_schema_to_responses(schema: ToolSchema) -> Optional[Dict[str, Any]]:
    """Convert a ToolSchema to a Responses function tool.

    Returns:
        None when the schema lacks a name, a description or a parameters
        object; the Responses endpoint rejects such definitions.
    """
    if not schema.name or not schema.description or not isinstance(schema.parameters, dict):
        return None
    return {
        "type": "function",
        "name": sanitize_function_name(schema.name),
        "description": schema.description,
        "parameters": sanitize_schema(schema.parameters),
    }


def tool_choice_to_wire(
    choice: ToolChoice,
    tools: List[ToolSchema],
    responses: bool = False,
) -> Any:
    """Convert a tool choice policy for the given tools.

    REQUIRED with exactly one tool names that tool; with several it is sent
    as ``"required"``.
    """
    if choice != ToolChoice.REQUIRED:
        return "auto"
    if len(tools) != 1:
        return "required"
    name = sanitize_function_name(tools[0].name)
    if responses:
        return {"type": "function", "name": name}
    return {"type": "function", "function": {"name": name}}


# ==================== Chat Completions Shape ====================

def _arguments_json(call: FunctionCall) -> str:
    try:
        return json.dumps(call.args if call.args is not None else {})
    except (TypeError, ValueError):
        return "{}"


def _image_item(part) -> Dict[str, Any]:
    data = part.inline_data.get("data", b"")
    if isinstance(data, str):
        data = data.encode("utf-8")
    encoded = base64.b64encode(bytes(data)).decode("ascii")
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{part.inline_data['mime_type']};base64,{encoded}"},
    }


def _chat_content(message: Message) -> Any:
    """String content, or an item array when images are present."""
    text = message.text or ""
    images = message.images
    if not images:
        return text or None
    items: List[Dict[str, Any]] = []
    if text:
        items.append({"type": "text", "text": text})
    items.extend(_image_item(p) for p in images)
    return items


def message_to_chat(message: Message) -> Optional[Dict[str, Any]]:
    """Convert one canonical message to a chat-completions message.

    Returns:
        The wire message, or None when the message carries nothing to send.
    """
    if message.role == Role.TOOL:
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id or "",
            "content": message.text or "Success",
        }

    content = _chat_content(message)

    if message.role == Role.ASSISTANT and message.tool_calls:
        return {
            "role": "assistant",
            "content": content,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": _arguments_json(call)},
                }
                for call in message.tool_calls
            ],
        }

    if content is None:
        return None
    return {"role": message.role.value, "content": content}


def messages_to_chat(messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert canonical messages to the chat-completions ``messages`` list."""
    out = []
    for message in messages:
        converted = message_to_chat(message)
        if converted is not None:
            out.append(converted)
    return out


# ==================== Responses Shape ====================

def normalize_call_id(call_id: str) -> str:
    """Prefix a tool call id with ``fc_`` unless it already has it."""
    if not call_id or call_id.startswith(CALL_ID_PREFIX):
        return call_id
    return f"{CALL_ID_PREFIX}{call_id}"


def messages_to_responses_input(
    messages: List[Message],
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Convert canonical messages to Responses ``input`` items.

    The Responses API uses a different format:
    - The first system message becomes the ``instructions`` parameter
    - User/assistant text become ``message`` items (images are dropped)
    - Assistant tool calls become ``function_call`` items with ``fc_`` ids
    - Tool results become ``function_call_output`` items, but only for
      calls emitted earlier in this same input; the endpoint rejects the
      whole request if an output references an unknown call.

    Args:
        messages: Canonical messages.

    Returns:
        Tuple of (input items, instructions).
    """
    id_map: Dict[str, str] = {}
    for message in messages:
        if message.role == Role.ASSISTANT:
            for call in message.tool_calls:
                id_map[call.id] = normalize_call_id(call.id)

    items: List[Dict[str, Any]] = []
    added: Set[str] = set()
    instructions: Optional[str] = None
    seen_system = False

    for message in messages:
        if message.role == Role.SYSTEM:
            if not seen_system:
                seen_system = True
                instructions = message.text
            continue

        if message.role == Role.USER:
            text = message.text
            if text:
                items.append({"type": "message", "role": "user", "content": text})

        elif message.role == Role.ASSISTANT:
            text = message.text
            if text:
                items.append({"type": "message", "role": "assistant", "content": text})
            for call in message.tool_calls:
                normalized = id_map.get(call.id) or normalize_call_id(call.id)
                added.add(normalized)
                items.append({
                    "type": "function_call",
                    "id": normalized,
                    "call_id": normalized,
                    "name": call.name,
                    "arguments": _arguments_json(call),
                })

        elif message.role == Role.TOOL:
            call_id = message.tool_call_id
            if not call_id:
                continue
            normalized = id_map.get(call_id) or normalize_call_id(call_id)
            if normalized in added:
                items.append({
                    "type": "function_call_output",
                    "call_id": normalized,
                    "output": message.text or "",
                })

    return items, instructions


# ==================== Request Translation ====================

def _sampling_parameters(
    request: ChatRequest,
    supported: Optional[ParameterSupport],
) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for name in SAMPLING_PARAMETERS:
        value = getattr(request, name)
        if value is None:
            continue
        if supported is not None and not supported(name, request.model):
            continue
        params[name] = value
    return params


def to_chat_completions_body(
    request: ChatRequest,
    supported: Optional[ParameterSupport] = None,
) -> Dict[str, Any]:
    """Build a ``/chat/completions`` body from a canonical request."""
    body: Dict[str, Any] = {
        "model": request.model,
        "messages": messages_to_chat(request.messages),
        "stream": request.stream,
    }
    if request.max_tokens is not None:
        body["max_tokens"] = request.max_tokens
    body.update(_sampling_parameters(request, supported))

    if request.tools:
        body["tools"] = [tool_schema_to_chat(t) for t in request.tools]
        body["tool_choice"] = tool_choice_to_wire(request.tool_choice, request.tools)
    return body


def to_responses_body(
    request: ChatRequest,
    supported: Optional[ParameterSupport] = None,
) -> Dict[str, Any]:
    """Build a ``/responses`` body from a canonical request."""
    items, instructions = messages_to_responses_input(request.messages)
    body: Dict[str, Any] = {
        "model": request.model,
        "input": items,
        "stream": request.stream,
    }
    if instructions:
        body["instructions"] = instructions
    if request.max_tokens is not None:
        body["max_output_tokens"] = request.max_tokens
    body.update(_sampling_parameters(request, supported))

    valid = [t for t in request.tools if tool_schema_to_responses(t) is not None]
    if valid:
        body["tools"] = [tool_schema_to_responses(t) for t in valid]
        body["tool_choice"] = tool_choice_to_wire(request.tool_choice, valid, responses=True)
    return body


def translate_request(
    request: ChatRequest,
    mode: Optional[str] = None,
    supported: Optional[ParameterSupport] = None,
) -> Dict[str, Any]:
    """Translate a canonical request into the wire body for ``mode``.

    Args:
        request: Canonical request.
        mode: Gateway mode; "responses" selects the Responses shape, anything
            else chat completions.
        supported: Optional ``(parameter, model_id) -> bool`` lookup deciding
            which sampling parameters to include.

    Returns:
        JSON-serializable request body.
    """
    if is_responses_mode(mode):
        return to_responses_body(request, supported)
    return to_chat_completions_body(request, supported)

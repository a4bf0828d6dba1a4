"""
OpenAI-compatible chat completions client.

Works against any endpoint speaking the `/chat/completions` dialect
(OpenRouter, OpenAI, vLLM, Ollama). Provider failures are classified and
returned on the response rather than raised, so the agent loop owns the
retry decision.
"""

import json
from typing import Any, Dict, List, Optional

import httpx
import structlog

from relay.domain.models import Message, Role, ToolCall
from relay.interfaces.llm import LLMInterface, ModelRequest, ModelResponse

logger = structlog.get_logger(__name__)

# 4xx statuses worth retrying; every other 4xx is the caller's fault.
TRANSIENT_STATUSES = frozenset({408, 409, 425, 429})


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUSES or status_code >= 500


def message_to_openai(message: Message) -> Dict[str, Any]:
    """Convert a domain message to the OpenAI wire format."""
    data: Dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.role == Role.ASSISTANT and message.tool_calls:
        data["content"] = message.content or None
        data["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.arguments),
                },
            }
            for call in message.tool_calls
        ]
    if message.role == Role.TOOL:
        data["tool_call_id"] = message.tool_result_id
        if message.name:
            data["name"] = message.name
    return data


def parse_tool_calls(raw_calls: Optional[List[Dict[str, Any]]]) -> List[ToolCall]:
    """Decode tool calls; undecodable arguments are kept under ``_raw``."""
    calls = []
    for raw in raw_calls or []:
        function = raw.get("function") or {}
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Undecodable tool arguments", tool=function.get("name"))
                arguments = {"_raw": arguments}
        if not isinstance(arguments, dict):
            arguments = {"_raw": arguments}
        calls.append(ToolCall(id=raw.get("id", ""), name=function.get("name", ""), arguments=arguments))
    return calls


class OpenAICompatibleClient(LLMInterface):
    """httpx client for OpenAI-compatible chat completion APIs"""

    def __init__(
        self,
        api_key: Optional[str],
        api_base: str = "https://openrouter.ai/api/v1",
        timeout: float = 120.0,
        extra_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.extra_headers = extra_headers or {}
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.api_base,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self.client

    async def aclose(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **self.extra_headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, request: ModelRequest) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "model": request.model,
            "messages": [message_to_openai(m) for m in request.messages],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools:
            data["tools"] = request.tools
            data["tool_choice"] = "auto"
        return data

    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Issue one chat completion; never raises for provider failures."""
        client = self._ensure_client()

        logger.debug(
            "Calling model",
            model=request.model,
            message_count=len(request.messages),
            tool_count=len(request.tools),
        )

        try:
            response = await client.post(
                "/chat/completions",
                json=self._payload(request),
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            logger.error("Model request timed out", model=request.model, timeout=self.timeout)
            return ModelResponse.failed(f"Request timed out: {e}", transient=True)
        except httpx.TransportError as e:
            logger.error("Model request failed", model=request.model, error=str(e))
            return ModelResponse.failed(f"Transport error: {e}", transient=True)

        if response.status_code >= 400:
            transient = is_transient_status(response.status_code)
            logger.error(
                "Model API error",
                status=response.status_code,
                transient=transient,
                error=response.text[:500],
            )
            return ModelResponse.failed(
                f"Provider returned {response.status_code}: {response.text[:200]}",
                transient=transient,
                status_code=response.status_code,
            )

        try:
            result = response.json()
            choice = result["choices"][0]
            message = choice["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("Unparseable model response", error=str(e))
            return ModelResponse.failed(f"Unparseable provider response: {e}", transient=False)

        tool_calls = parse_tool_calls(message.get("tool_calls"))
        content = message.get("content") or ""

        logger.debug(
            "Model response received",
            has_content=bool(content),
            tool_calls=len(tool_calls),
            finish_reason=choice.get("finish_reason"),
        )

        return ModelResponse(
            content=content,
            tool_calls=tuple(tool_calls),
            finish_reason=choice.get("finish_reason"),
            usage=result.get("usage"),
            metadata={"id": result.get("id"), "model": result.get("model", request.model)},
        )

from dataclasses import dataclass, field
from typing import Optional

import requests
import structlog

from errors import AssistantError

logger = structlog.get_logger(__name__)


@dataclass
class ToolCall:
    name: str
    arguments: str
    id: Optional[str] = None


@dataclass
class AssistantReply:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


class AssistantClient:
    """Minimal client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "AssistantClient":
        return cls(
            base_url=settings.assistant_base_url,
            model=settings.assistant_model,
            api_key=settings.assistant_api_key,
            timeout=settings.assistant_timeout,
        )

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def send(self, messages: list[dict], tools: Optional[list[dict]] = None) -> AssistantReply:
        payload: dict = {"model": self.model, "messages": messages}
        if tools:
            payload["tools"] = tools
        try:
            resp = self.session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("assistant_request_failed", error=str(e))
            raise AssistantError(f"assistant request failed: {e}", code="network") from e
        if resp.status_code >= 400:
            code = None
            try:
                code = (resp.json().get("error") or {}).get("code")
            except ValueError:
                pass
            logger.warning("assistant_http_error", status=resp.status_code, code=code)
            raise AssistantError(
                f"assistant returned HTTP {resp.status_code}",
                status=resp.status_code,
                code=code,
            )
        return parse_reply(resp.json())


def parse_reply(body: dict) -> AssistantReply:
    """Extract text and tool calls from a chat completions response body."""
    choices = body.get("choices") or []
    if not choices:
        raise AssistantError("assistant response had no choices", code="empty")
    message = choices[0].get("message") or {}
    calls = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        calls.append(
            ToolCall(
                name=function.get("name", ""),
                arguments=function.get("arguments") or "",
                id=raw.get("id"),
            )
        )
    return AssistantReply(content=message.get("content") or "", tool_calls=calls)

"""OpenRouter Provider 适配器。

OpenRouter 提供 OpenAI 兼容的 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本实现只依赖公共字段：model/messages/temperature/max_tokens/top_p/tools/tool_choice。
"""

import json
from typing import Any, Dict, List

import httpx

from agent_runtime.config.settings import settings
from agent_runtime.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from agent_runtime.domain.models import ChatChoice, ChatMessage, ChatRequest, ChatResult, ChatUsage
from agent_runtime.tools.definitions import ToolCall, ToolDef


class OpenRouterClient:
    """OpenRouter Provider 客户端实现。"""

    name = "openrouter"

    def __init__(self, cfg=settings):
        self._settings = cfg

    def chat(self, req: ChatRequest) -> ChatResult:
        if not getattr(self._settings, "openrouter_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="OPENROUTER_API_KEY not set")
        payload = self._build_payload(req)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    f"{self._settings.openrouter_base_url.rstrip('/')}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._settings.openrouter_api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="OpenRouter rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        data = resp.json()
        return self._parse_response(data, req)

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest) -> dict:
        payload: Dict[str, Any] = {
            "model": req.model or self._settings.default_model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.temperature,
            "top_p": req.top_p,
            "stream": False,
        }
        if req.max_tokens:
            payload["max_tokens"] = req.max_tokens
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        return payload

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            cm = self._build_chat_message(msg)
            choices.append(ChatChoice(index=i, message=cm, finish_reason=ch.get("finish_reason")))
        usage_raw = data.get("usage") or {}
        usage = ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )
        return ChatResult(
            provider=self.name,
            model=data.get("model") or req.model,
            choices=choices,
            usage=usage,
            raw=data,
        )

    def _build_chat_message(self, payload: Dict[str, Any]) -> ChatMessage:
        """解析 OpenAI 风格的 message，兼容旧的 function_call 字段。"""

        role = payload.get("role") or "assistant"
        content = payload.get("content") or ""
        tool_calls: List[ToolCall] = []
        for idx, call in enumerate(payload.get("tool_calls") or []):
            func = call.get("function") or {}
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or call.get("name") or "",
                    arguments=self._parse_arguments(func.get("arguments")),
                )
            )

        function_call = payload.get("function_call")
        if function_call:
            tool_calls.append(
                ToolCall(
                    id=function_call.get("id") or "function_call",
                    name=function_call.get("name") or "",
                    arguments=self._parse_arguments(function_call.get("arguments")),
                )
            )

        return ChatMessage(role=role, content=content, tool_calls=tool_calls or None)

    def _message_to_payload(self, message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content or ""}
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.json_schema(),
            },
        }

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            if not raw.strip():
                return {}
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
            return parsed if isinstance(parsed, dict) else {"_raw": raw}
        return {}

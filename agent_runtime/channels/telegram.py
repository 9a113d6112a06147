"""Telegram 通道：基于 Bot API 的长轮询实现。

- 拉取: GET {api}/bot<token>/getUpdates?offset=..&timeout=..
- 发送: POST {api}/bot<token>/sendMessage（HTML parse_mode，超长消息分段）
- 授权: 仅 telegram_allowed_users 中的用户名可以使用，空列表拒绝所有人。
"""

import html
import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from agent_runtime.agents.agent import Agent
from agent_runtime.config.settings import settings as default_settings
from agent_runtime.domain.exceptions import ApiError, NetworkError
from agent_runtime.infrastructure.logging.logger import logger
from .base import Channel

API_BASE = "https://api.telegram.org"
MAX_MESSAGE_CHARS = 4096
ERROR_BACKOFF = 2.0


def split_text(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> List[str]:
    if len(text) <= max_chars:
        return [text]
    chunks: List[str] = []
    start = 0
    while start < len(text):
        end = min(start + max_chars, len(text))
        # 尽量在换行处切分
        if end < len(text):
            newline_pos = text.rfind("\n", start, end)
            if newline_pos > start:
                end = newline_pos
        chunks.append(text[start:end])
        start = end + (1 if end < len(text) and text[end] == "\n" else 0)
    return chunks


def markdown_to_html(text: str) -> str:
    """把常见的 Markdown 标记转换为 Telegram 支持的 HTML 子集。"""
    blocks: List[str] = []

    def _stash_block(match: "re.Match[str]") -> str:
        blocks.append(f"<pre>{html.escape(match.group(1).strip(chr(10)))}</pre>")
        return f"\x00{len(blocks) - 1}\x00"

    body = re.sub(r"```(?:[\w+-]*\n)?(.*?)```", _stash_block, text, flags=re.DOTALL)
    body = html.escape(body, quote=False)
    body = re.sub(r"`([^`\n]+)`", r"<code>\1</code>", body)
    body = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", body)
    body = re.sub(r"(?<!\w)_(.+?)_(?!\w)", r"<i>\1</i>", body)
    return re.sub(r"\x00(\d+)\x00", lambda m: blocks[int(m.group(1))], body)


class TelegramChannel(Channel):
    name = "telegram"
    required_config = ("telegram_bot_token",)

    def __init__(self, agent: Agent, cfg=default_settings, api_base: str = API_BASE):
        super().__init__(agent, cfg)
        self._token = cfg.telegram_bot_token
        self._allowed_users = {u.lstrip("@").lower() for u in (cfg.telegram_allowed_users or [])}
        self._poll_timeout = int(getattr(cfg, "telegram_poll_timeout", 30))
        self._api = f"{api_base.rstrip('/')}/bot{self._token}"
        self._client: Optional[httpx.Client] = None
        self._offset: Optional[int] = None

    # ---- 生命周期 ----

    def start(self) -> None:
        self._client = httpx.Client(timeout=self._poll_timeout + 10, trust_env=False)
        if not self._stop_requested.is_set():
            self._running.set()
        self._log(logging.INFO, "Telegram channel started", allowed_users=sorted(self._allowed_users))
        try:
            while self._running.is_set():
                try:
                    updates = self.poll_updates()
                except (ApiError, NetworkError) as e:
                    if not self._running.is_set():
                        break
                    self._log(logging.WARNING, "Polling failed", error=e.message)
                    time.sleep(ERROR_BACKOFF)
                    continue
                for update in updates:
                    self._handle_update(update)
        finally:
            self._running.clear()
            self._close_client()
            self._log(logging.INFO, "Telegram channel stopped")

    def stop(self) -> None:
        super().stop()
        # 关闭连接以打断正在进行的长轮询
        self._close_client()

    # ---- Bot API ----

    def poll_updates(self) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"timeout": self._poll_timeout, "allowed_updates": '["message"]'}
        if self._offset is not None:
            params["offset"] = self._offset
        data = self._call("GET", "getUpdates", params=params)
        updates = data.get("result") or []
        if updates:
            self._offset = max(int(u.get("update_id", 0)) for u in updates) + 1
        return updates

    def _call(self, method: str, endpoint: str, **kwargs: Any) -> Dict[str, Any]:
        client = self._client
        if client is None:
            raise NetworkError(code="NETWORK_ERROR", message="Telegram client is not open")
        try:
            resp = client.request(method, f"{self._api}/{endpoint}", **kwargs)
        except (httpx.RequestError, RuntimeError) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="API_ERROR", message=f"Invalid JSON from Telegram: {e}")
        if not data.get("ok", False):
            raise ApiError(code="API_ERROR", message=str(data.get("description") or data))
        return data

    def _handle_update(self, update: Dict[str, Any]) -> None:
        message = update.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id")
        if chat_id is None:
            return
        self.process_message(str(chat_id), message, {"update_id": update.get("update_id")})

    def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    # ---- 钩子 ----

    def extract_content(self, raw_message: Any) -> Optional[str]:
        if isinstance(raw_message, dict):
            return raw_message.get("text")
        return super().extract_content(raw_message)

    def extract_user_id(self, source_id: str, raw_message: Any) -> Optional[str]:
        if isinstance(raw_message, dict):
            return (raw_message.get("from") or {}).get("username")
        return None

    def is_authorized(self, user_id: Optional[str]) -> bool:
        if not user_id or not self._allowed_users:
            return False
        return user_id.lstrip("@").lower() in self._allowed_users

    def start_typing(self, source_id: str) -> None:
        try:
            self._call("POST", "sendChatAction", json={"chat_id": source_id, "action": "typing"})
        except (ApiError, NetworkError) as e:
            self._log(logging.DEBUG, "Typing indicator failed", source_id=source_id, error=e.message)

    def format_message(self, text: str) -> str:
        return markdown_to_html(text)

    def deliver_message(self, source_id: str, formatted: str) -> None:
        for chunk in split_text(formatted):
            self._send_chunk(source_id, chunk)

    def _send_chunk(self, source_id: str, chunk: str) -> None:
        try:
            self._call(
                "POST",
                "sendMessage",
                json={"chat_id": source_id, "text": chunk, "parse_mode": "HTML"},
            )
        except ApiError as e:
            # HTML 解析失败时退回纯文本
            logger.warning(
                "HTML delivery failed, retrying as plain text",
                extra={"extra": {"channel": self.name, "source_id": source_id, "error": e.message}},
            )
            self._call("POST", "sendMessage", json={"chat_id": source_id, "text": chunk})

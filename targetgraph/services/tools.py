from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Protocol

import httpx

from targetgraph.config import settings
from targetgraph.services.framer import SseFramer

logger = logging.getLogger(__name__)

_PROTOCOL_VERSION = "2025-03-26"
_CLIENT_INFO = {"name": "targetgraph", "version": "0.1.0"}
_TRAILING_OBJECT = re.compile(r"\{[\s\S]*\}$")
_TRAILING_ARRAY = re.compile(r"\[[\s\S]*\]$")


class ToolCallError(RuntimeError):
    pass


class ToolCaller(Protocol):
    async def call_tool(self, name: str, args: dict, timeout: float | None = None) -> object: ...

    async def call_tool_raw(self, name: str, args: dict, timeout: float | None = None) -> str: ...


def parse_possible_json(raw: str) -> object:
    """Parse tool text output that may wrap JSON in prose."""
    trimmed = raw.strip()
    if not trimmed:
        return {}
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        pass
    for pattern in (_TRAILING_OBJECT, _TRAILING_ARRAY):
        match = pattern.search(trimmed)
        if match is None:
            continue
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
    raise ToolCallError(f"Unable to parse tool JSON payload: {trimmed[:160]}")


def _rpc_message(body: str, content_type: str, request_id: int) -> dict:
    if "text/event-stream" in content_type:
        framer = SseFramer()
        frames = framer.feed(body) + framer.flush()
        for frame in frames:
            try:
                message = frame.json()
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
        raise ToolCallError("Tool server stream ended without a response")
    message = json.loads(body) if body.strip() else {}
    if not isinstance(message, dict):
        raise ToolCallError("Tool server returned a non-object JSON-RPC reply")
    return message


class McpToolClient:
    """Minimal streamable-HTTP MCP client: initialize, then tools/call."""

    def __init__(self, endpoint: str, transport: httpx.AsyncBaseTransport | None = None):
        self.endpoint = endpoint
        self.transport = transport

    async def _post(
        self,
        client: httpx.AsyncClient,
        payload: dict,
        session_id: str | None,
    ) -> httpx.Response:
        headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
        }
        if session_id:
            headers["Mcp-Session-Id"] = session_id
        response = await client.post(self.endpoint, json=payload, headers=headers)
        response.raise_for_status()
        return response

    async def _call(self, name: str, args: dict) -> str:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(settings.TOOL_TIMEOUT_SECONDS, connect=3.0),
            transport=self.transport,
        ) as client:
            init = await self._post(
                client,
                {
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": "initialize",
                    "params": {
                        "protocolVersion": _PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": _CLIENT_INFO,
                    },
                },
                None,
            )
            session_id = init.headers.get("mcp-session-id")
            await self._post(
                client,
                {"jsonrpc": "2.0", "method": "notifications/initialized"},
                session_id,
            )
            response = await self._post(
                client,
                {
                    "jsonrpc": "2.0",
                    "id": 2,
                    "method": "tools/call",
                    "params": {"name": name, "arguments": args},
                },
                session_id,
            )

        message = _rpc_message(response.text, response.headers.get("content-type", ""), 2)
        if "error" in message:
            raise ToolCallError(f"{name}: {message['error']}")
        result = message.get("result") or {}
        content = result.get("content") or []
        text = "\n".join(
            item.get("text") or ""
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        )
        if result.get("isError"):
            raise ToolCallError(f"{name}: {text[:200] or 'tool reported an error'}")
        return text

    async def call_tool_raw(self, name: str, args: dict, timeout: float | None = None) -> str:
        limit = settings.TOOL_TIMEOUT_SECONDS if timeout is None else timeout
        return await asyncio.wait_for(self._call(name, args), timeout=limit)

    async def call_tool(self, name: str, args: dict, timeout: float | None = None) -> object:
        return parse_possible_json(await self.call_tool_raw(name, args, timeout))

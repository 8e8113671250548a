"""
DVM MCP Server
==============

Exposes the inference provider as an MCP tool and the node state as
MCP resources over stdio transport.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from mcp.server.fastmcp import FastMCP

from agents.base import InferenceError, InferenceProvider
from core.protocol import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
    InferenceParams,
)

logger = logging.getLogger(__name__)


_ROLES = ("system", "user", "assistant")


def _validate_messages(messages: Any) -> Optional[str]:
    if not isinstance(messages, list) or not messages:
        return "messages_required"
    for message in messages:
        if not isinstance(message, dict):
            return "message_must_be_object"
        if message.get("role") not in _ROLES:
            return "invalid_role"
        if not isinstance(message.get("content"), str):
            return "content_must_be_string"
    return None


class DVMMCPServer:
    def __init__(
        self,
        *,
        provider: InferenceProvider,
        models: Sequence[str] = (),
        node: Any = None,
    ) -> None:
        self.provider = provider
        self.models = list(models)
        self.node = node

        self._mcp = FastMCP(
            "nostr-dvm",
            instructions="Chat completions and status for the Nostr DVM node.",
        )

        self._register_resources()
        self._register_tools()

    @property
    def mcp(self) -> FastMCP:
        return self._mcp

    async def run_stdio(self) -> None:
        logger.info("[MCP] Serving over stdio")
        await self._mcp.run_stdio_async()

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        top_p: float = DEFAULT_TOP_P,
    ) -> Dict[str, Any]:
        error = _validate_messages(messages)
        if error:
            return {"ok": False, "error": error}
        if not model:
            return {"ok": False, "error": "model_required"}
        if self.models and model not in self.models:
            return {"ok": False, "error": f"unsupported_model: {model}"}

        params = InferenceParams(
            model=model,
            temperature=float(temperature),
            max_tokens=int(max_tokens),
            top_p=float(top_p),
        )
        try:
            content = await self.provider.chat(messages, params)
        except InferenceError as e:
            logger.warning(f"[MCP] chat_completion failed: {e.message}")
            return {"ok": False, "error": e.message, "rate_limited": e.rate_limited}
        return {"ok": True, "model": model, "content": content}

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def _register_resources(self) -> None:
        @self._mcp.resource("dvm://status")
        def status() -> Dict[str, Any]:
            if not self.node:
                return {"running": False, "models": self.models}
            stats = self.node.get_stats()
            stats.pop("metrics", None)
            stats["models"] = self.models
            return stats

        @self._mcp.resource("dvm://metrics")
        def metrics() -> Dict[str, Any]:
            if not self.node:
                return {"error": "node_unavailable"}
            return self.node.metrics.export_json()

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _register_tools(self) -> None:
        @self._mcp.tool()
        async def chat_completion(
            messages: List[Dict[str, str]],
            model: str,
            temperature: float = DEFAULT_TEMPERATURE,
            max_tokens: int = DEFAULT_MAX_TOKENS,
            top_p: float = DEFAULT_TOP_P,
        ) -> Dict[str, Any]:
            """Run a chat completion with the configured provider."""
            return await self.chat_completion(messages, model, temperature, max_tokens, top_p)

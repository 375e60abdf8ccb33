"""
HTTP agent dispatcher.

Posts a MessageContext to the agent runtime and reads the reply as a stream
of newline-delimited JSON fragments:

    {"kind": "block", "text": "Hello"}
    {"kind": "block", "text": " world", "media_urls": ["/tmp/chart.png"]}
    {"kind": "final", "text": "", "reply_to_id": "om_xxx"}
"""

import json
import logging
from typing import Any

import httpx

from feishu_channel.domain.model.channels.message import (
    FragmentKind,
    MessageContext,
    ReplyFragment,
)
from feishu_channel.domain.ports.services.agent_dispatch_port import (
    AgentDispatchPort,
    DeliverCallback,
)

logger = logging.getLogger(__name__)


class AgentDispatchError(Exception):
    """Raised when the agent runtime rejects or breaks off a dispatch."""


def _media_urls(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(url) for url in value)


def parse_fragment(raw: dict[str, Any]) -> ReplyFragment:
    try:
        kind = FragmentKind(raw.get("kind") or FragmentKind.BLOCK.value)
    except ValueError:
        logger.warning(f"[AgentDispatcher] Unknown fragment kind {raw.get('kind')!r}, using block")
        kind = FragmentKind.BLOCK
    return ReplyFragment(
        text=raw.get("text") or "",
        media_urls=_media_urls(raw.get("media_urls")),
        reply_to_id=raw.get("reply_to_id"),
        kind=kind,
    )


class HttpAgentDispatcher(AgentDispatchPort):
    """AgentDispatchPort backed by a streaming HTTP endpoint."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 300.0,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(headers=headers, timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def dispatch(
        self,
        context: MessageContext,
        deliver: DeliverCallback,
        *,
        disable_block_streaming: bool = False,
    ) -> None:
        payload = {
            "context": context.to_dict(),
            "disable_block_streaming": disable_block_streaming,
        }
        fragments = 0
        try:
            async with self._client.stream("POST", self._url, json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise AgentDispatchError(
                        f"Agent runtime returned HTTP {response.status_code}: {body[:200]!r}"
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        raw = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"[AgentDispatcher] Skipping malformed line: {line[:120]}")
                        continue
                    if not isinstance(raw, dict):
                        logger.warning(f"[AgentDispatcher] Skipping non-object line: {line[:120]}")
                        continue
                    await deliver(parse_fragment(raw))
                    fragments += 1
        except httpx.HTTPError as e:
            raise AgentDispatchError(f"Agent runtime request failed: {e}") from e

        logger.debug(
            f"[AgentDispatcher] Session {context.session_key} delivered {fragments} fragments"
        )

"""Resolution of the agent and session a chat message belongs to."""

from collections.abc import Callable

from feishu_channel.domain.model.channels.bot import AgentRoute
from feishu_channel.domain.model.channels.message import ChatKind

CHANNEL_ID = "feishu"


class AgentRouter:
    """Maps (account, peer) to an agent id and a stable session key.

    Direct chats are keyed by the sender, group chats by the chat id, so
    every bot keeps its own session per group.
    """

    def __init__(self, agent_for: Callable[[str], str | None] | None = None) -> None:
        self._agent_for = agent_for or (lambda _account_id: None)

    def resolve(self, account_id: str, chat_kind: ChatKind, peer_id: str) -> AgentRoute:
        configured = self._agent_for(account_id)
        agent_id = configured or account_id
        peer_kind = "dm" if chat_kind == ChatKind.DIRECT else "group"
        return AgentRoute(
            agent_id=agent_id,
            session_key=f"agent:{agent_id}:{CHANNEL_ID}:{account_id}:{peer_kind}:{peer_id}",
            matched_by="account" if configured else "default",
        )

"""Channels domain model - inbound events, reply fragments and send results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from feishu_channel.domain.shared_kernel import ValueObject

BROADCAST_MENTION_KEY = "@_all"


class MessageType(str, Enum):
    """Inbound message content types understood by the pipeline."""

    TEXT = "text"
    POST = "post"
    IMAGE = "image"
    AUDIO = "audio"
    FILE = "file"
    MEDIA = "media"
    STICKER = "sticker"
    SHARE_CHAT = "share_chat"
    SHARE_USER = "share_user"
    MERGE_FORWARD = "merge_forward"
    LOCATION = "location"

    @classmethod
    def parse(cls, raw: str | None) -> "MessageType | None":
        """Map a platform msg_type string to a MessageType, or None if unsupported."""
        if not raw:
            return None
        try:
            return cls(raw)
        except ValueError:
            return None

    @property
    def fallback_text(self) -> str:
        """Placeholder rendered when the content cannot be parsed."""
        return _FALLBACK_TEXT[self]

    @property
    def has_resource(self) -> bool:
        """Whether the message carries a downloadable resource."""
        return self in (
            MessageType.IMAGE,
            MessageType.AUDIO,
            MessageType.FILE,
            MessageType.MEDIA,
            MessageType.STICKER,
        )


_FALLBACK_TEXT: dict[MessageType, str] = {
    MessageType.TEXT: "",
    MessageType.POST: "[富文本消息]",
    MessageType.IMAGE: "[图片]",
    MessageType.AUDIO: "[语音消息]",
    MessageType.FILE: "[文件处理失败]",
    MessageType.MEDIA: "[媒体处理失败]",
    MessageType.STICKER: "[表情]",
    MessageType.SHARE_CHAT: "[分享群聊]",
    MessageType.SHARE_USER: "[名片]",
    MessageType.MERGE_FORWARD: "[合并转发消息]",
    MessageType.LOCATION: "[位置]",
}


class ChatKind(str, Enum):
    """Chat kinds."""

    DIRECT = "direct"
    GROUP = "group"

    @classmethod
    def from_platform(cls, chat_type: str | None) -> "ChatKind":
        """Feishu reports direct chats as "p2p"; everything else is a group."""
        return cls.DIRECT if chat_type == "p2p" else cls.GROUP


class FragmentKind(str, Enum):
    """Kinds of streamed reply fragments produced by the agent runtime."""

    BLOCK = "block"
    FINAL = "final"
    TOOL = "tool"


@dataclass(frozen=True)
class MentionTarget(ValueObject):
    """A structured mention embedded in an inbound message."""

    key: str
    open_id: str
    name: str = ""


@dataclass(frozen=True)
class InboundEvent(ValueObject):
    """One inbound message event, normalized from the platform payload."""

    event_id: str
    account_id: str
    chat_id: str
    chat_kind: ChatKind
    sender_id: str
    created_at_ms: int | None = None
    message_type: str = "text"
    content: str = ""
    mentions: tuple[MentionTarget, ...] = ()
    has_broadcast_mention: bool = False
    parent_id: str | None = None
    sender_type: str = "user"
    raw_payload: dict[str, Any] | None = field(default=None, repr=False, compare=False)

    @property
    def mentioned_ids(self) -> list[str]:
        """Platform ids of the mention targets, in message order."""
        return [m.open_id for m in self.mentions]

    @property
    def is_group(self) -> bool:
        return self.chat_kind == ChatKind.GROUP


@dataclass(frozen=True)
class ReplyFragment(ValueObject):
    """One incremental piece of a streamed agent reply."""

    text: str = ""
    media_urls: tuple[str, ...] = ()
    reply_to_id: str | None = None
    kind: FragmentKind = FragmentKind.BLOCK

    @property
    def is_block(self) -> bool:
        return self.kind == FragmentKind.BLOCK


@dataclass(frozen=True)
class SendResult(ValueObject):
    """Outcome of a platform send API call."""

    ok: bool
    message_id: str | None = None
    error: str | None = None
    reaction_id: str | None = None

    @classmethod
    def success(cls, message_id: str | None = None) -> "SendResult":
        return cls(ok=True, message_id=message_id)

    @classmethod
    def failure(cls, error: str) -> "SendResult":
        return cls(ok=False, error=error)


@dataclass
class EnrichedMessage:
    """Inbound message after per-type parsing and resource download.

    Mutable because enrichment steps fill it in progressively.
    """

    message_id: str
    account_id: str
    chat_id: str
    chat_kind: ChatKind
    sender_id: str
    message_type: str
    text: str = ""
    was_mentioned: bool = False
    media_path: str | None = None
    media_type: str | None = None
    file_name: str | None = None
    original_message_type: str | None = None

    @property
    def is_voice(self) -> bool:
        return self.original_message_type == MessageType.AUDIO.value


@dataclass(frozen=True)
class MessageContext(ValueObject):
    """Normalized context handed to the agent dispatch runtime."""

    sender_id: str
    body: str
    account_id: str
    session_key: str
    chat_id: str
    chat_kind: ChatKind
    agent_id: str | None = None
    was_mentioned: bool = False
    message_id: str | None = None
    media_path: str | None = None
    media_type: str | None = None
    command_authorized: bool = True
    original_message_type: str | None = None
    provider: str = "feishu"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for transport to the agent runtime."""
        return {
            "from": self.sender_id,
            "body": self.body,
            "account_id": self.account_id,
            "agent_id": self.agent_id,
            "session_key": self.session_key,
            "to": self.chat_id,
            "chat_type": self.chat_kind.value,
            "was_mentioned": self.was_mentioned,
            "message_id": self.message_id,
            "media_path": self.media_path,
            "media_type": self.media_type,
            "command_authorized": self.command_authorized,
            "original_message_type": self.original_message_type,
            "provider": self.provider,
        }

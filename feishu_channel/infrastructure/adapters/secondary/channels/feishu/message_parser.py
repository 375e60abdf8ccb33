"""Parse im.message.receive_v1 payloads and enrich them per message type.

``build_inbound_event`` runs synchronously on the receive path and only
extracts what filtering and mention resolution need. ``MessageEnricher``
runs later, for accepted events only, and does the slow work: resource
downloads, transcription and quoted-message lookups.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

from feishu_channel.domain.model.channels.message import (
    BROADCAST_MENTION_KEY,
    ChatKind,
    EnrichedMessage,
    InboundEvent,
    MentionTarget,
    MessageType,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.media import (
    guess_mime_type,
    save_download,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.media_downloader import (
    DownloadedResource,
    FeishuResourceDownloadError,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.transcription import (
    AudioTranscriber,
)

logger = logging.getLogger(__name__)

_HTML_TAG = re.compile(r"<[^>]+>")


class MessageSource(Protocol):
    async def get_message_items(self, message_id: str) -> list[dict[str, Any]]: ...

    async def download_resource(
        self, message_id: str, file_key: str, resource_type: str, file_name: str | None = None
    ) -> DownloadedResource: ...


def _load_content(content: str | None) -> dict[str, Any]:
    if not content:
        return {}
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _parse_mentions(raw_mentions: list[dict[str, Any]] | None) -> tuple[MentionTarget, ...]:
    mentions = []
    for raw in raw_mentions or []:
        mention_id = raw.get("id") or {}
        open_id = mention_id.get("open_id") if isinstance(mention_id, dict) else mention_id
        mentions.append(
            MentionTarget(key=raw.get("key") or "", open_id=open_id or "", name=raw.get("name") or "")
        )
    return tuple(mentions)


def _parse_create_time(value: Any) -> int | None:
    """create_time is a millisecond timestamp string; absent or invalid yields None."""
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_inbound_event(account_id: str, payload: dict[str, Any]) -> InboundEvent | None:
    """Normalize one receive event (the ``event`` object) into an InboundEvent.

    Returns None when the payload carries no message id.
    """
    message = payload.get("message") or {}
    sender = payload.get("sender") or {}
    message_id = message.get("message_id")
    if not message_id:
        logger.warning(f"[FeishuParser] [{account_id}] No message_id in event, skipping")
        return None

    message_type = message.get("message_type") or ""
    content = message.get("content") or ""
    mentions = _parse_mentions(message.get("mentions"))

    text = _load_content(content).get("text", "") if message_type == "text" else ""
    has_broadcast = BROADCAST_MENTION_KEY in (text or "") or any(
        m.key == BROADCAST_MENTION_KEY for m in mentions
    )
    sender_id = (sender.get("sender_id") or {}).get("open_id") or ""

    return InboundEvent(
        event_id=message_id,
        account_id=account_id,
        chat_id=message.get("chat_id") or "",
        chat_kind=ChatKind.from_platform(message.get("chat_type")),
        sender_id=sender_id,
        created_at_ms=_parse_create_time(message.get("create_time")),
        message_type=message_type,
        content=content,
        mentions=tuple(m for m in mentions if m.key != BROADCAST_MENTION_KEY),
        has_broadcast_mention=has_broadcast,
        parent_id=message.get("parent_id") or None,
        sender_type=sender.get("sender_type") or "user",
        raw_payload=payload,
    )


def render_text(content: dict[str, Any], mentions: tuple[MentionTarget, ...]) -> str:
    """Replace ``@_user_N`` placeholders with names and strip HTML tags."""
    text = content.get("text") or ""
    names = {m.key: m.name for m in mentions if m.key and m.name}
    if names:
        keys = sorted(names, key=len, reverse=True)
        pattern = re.compile("(?:" + "|".join(re.escape(key) for key in keys) + r")(?!\w)")
        text = pattern.sub(lambda match: f"@{names[match.group(0)]}", text)
    return _HTML_TAG.sub("", text).strip()


def _post_blocks(content: dict[str, Any]) -> list[Any]:
    lang_content = content.get("zh_cn") or content.get("en_us") or content
    blocks = lang_content.get("content") if isinstance(lang_content, dict) else None
    return blocks if isinstance(blocks, list) else []


def render_post(content: dict[str, Any]) -> tuple[str, str | None]:
    """Concatenate the text and link nodes of a post; also return the first image key."""
    parts: list[str] = []
    first_image_key = None
    for line in _post_blocks(content):
        if not isinstance(line, list):
            continue
        for node in line:
            tag = node.get("tag")
            if tag == "text" and node.get("text"):
                parts.append(node["text"])
            elif tag == "a" and node.get("text"):
                parts.append(f"{node['text']} ({node.get('href', '')})")
            elif tag == "img" and node.get("image_key") and first_image_key is None:
                first_image_key = node["image_key"]
    return "".join(parts), first_image_key


def _render_post_lines(content: dict[str, Any], *, with_images: bool) -> tuple[str, str | None]:
    lines: list[str] = []
    image_key = None
    for line in _post_blocks(content):
        if not isinstance(line, list):
            continue
        parts = []
        for node in line:
            tag = node.get("tag")
            if tag == "text" and node.get("text"):
                parts.append(node["text"])
            elif tag == "a" and node.get("text"):
                parts.append(f"{node['text']}({node.get('href', '')})")
            elif with_images and tag == "img" and node.get("image_key"):
                image_key = image_key or node["image_key"]
                parts.append("[图片]")
        if parts:
            lines.append("".join(parts))
    return "\n".join(lines), image_key


def render_location(content: dict[str, Any]) -> str:
    name = content.get("name") or "未知位置"
    latitude = content.get("latitude")
    longitude = content.get("longitude")
    if latitude and longitude:
        return f"[位置: {name} ({latitude}, {longitude})]"
    return f"[位置: {name}]"


@dataclass
class QuotedMessage:
    """The message a reply quotes."""

    msg_type: str
    text: str
    sender_id: str = ""
    image_key: str | None = None
    file_key: str | None = None
    file_name: str | None = None


def parse_quoted_message(item: dict[str, Any]) -> QuotedMessage:
    """Render a fetched message as a short quote."""
    msg_type = item.get("msg_type") or "unknown"
    raw_content = item.get("content") or ""
    quoted = QuotedMessage(msg_type=msg_type, text="", sender_id=item.get("sender_id") or "")

    if not raw_content:
        quoted.text = f"[{msg_type}消息]"
        return quoted
    # merge_forward bodies are plain English text, not JSON
    if msg_type == "merge_forward":
        quoted.text = "[合并转发消息]"
        return quoted

    try:
        content = json.loads(raw_content)
    except ValueError:
        quoted.text = f"[{msg_type}消息]"
        return quoted
    if not isinstance(content, dict):
        quoted.text = f"[{msg_type}消息]"
        return quoted

    if msg_type == "text":
        quoted.text = content.get("text") or ""
    elif msg_type == "post":
        text, quoted.image_key = _render_post_lines(content, with_images=True)
        quoted.text = text or "[富文本消息]"
    elif msg_type == "image":
        quoted.image_key = content.get("image_key")
        quoted.text = "[图片]"
    elif msg_type == "file":
        quoted.file_key = content.get("file_key")
        quoted.file_name = content.get("file_name") or ""
        quoted.text = f"[文件: {content.get('file_name') or 'unknown'}]"
    elif msg_type == "audio":
        quoted.text = "[语音消息]"
    elif msg_type == "media":
        quoted.file_key = content.get("file_key")
        quoted.file_name = content.get("file_name") or ""
        quoted.text = f"[视频: {quoted.file_name}]"
    elif msg_type == "sticker":
        quoted.file_key = content.get("file_key")
        quoted.text = "[表情]"
    elif msg_type == "share_chat":
        quoted.text = f"[分享群聊: {content.get('chat_name') or ''}]"
    elif msg_type == "share_user":
        quoted.text = f"[名片: {content.get('user_name') or content.get('name') or ''}]"
    elif msg_type == "interactive":
        quoted.text = "[卡片消息]"
    elif msg_type == "location":
        quoted.text = render_location(content)
    else:
        quoted.text = f"[{msg_type}消息]"
    return quoted


def render_forwarded_item(item: dict[str, Any]) -> str:
    """One sub-message of a merge-forward, as text."""
    msg_type = item.get("msg_type") or "unknown"
    raw_content = item.get("content") or ""
    try:
        content = json.loads(raw_content)
    except ValueError:
        return raw_content or f"[{msg_type}消息]"
    if not isinstance(content, dict):
        return raw_content or f"[{msg_type}]"

    if msg_type == "text":
        return content.get("text") or ""
    if msg_type == "post":
        text, _ = _render_post_lines(content, with_images=False)
        return text or "[富文本]"
    if msg_type == "image":
        return "[图片]"
    if msg_type == "file":
        return f"[文件: {content.get('file_name') or ''}]"
    if msg_type == "audio":
        return "[语音]"
    if msg_type == "media":
        return f"[视频: {content.get('file_name') or ''}]"
    if msg_type == "sticker":
        return "[表情]"
    if msg_type == "interactive":
        return "[卡片消息]"
    return raw_content or f"[{msg_type}]"


def render_forwarded_lines(items: list[dict[str, Any]], header: str) -> str:
    lines = [header]
    for item in items:
        marker = "🤖" if item.get("sender_type") == "app" else "👤"
        lines.append(f"{marker} {render_forwarded_item(item)}")
    return "\n".join(lines)


class MessageEnricher:
    """Turns an accepted InboundEvent into an EnrichedMessage for one account.

    Returns None when the message must be dropped: an unsupported type, or
    audio whose transcription failed.
    """

    def __init__(
        self,
        source: MessageSource,
        transcriber: AudioTranscriber,
        workspace: str | None = None,
    ) -> None:
        self._source = source
        self._transcriber = transcriber
        self._workspace = workspace

    async def __call__(self, event: InboundEvent, was_mentioned: bool) -> EnrichedMessage | None:
        message_type = MessageType.parse(event.message_type)
        if message_type is None:
            logger.info(
                f"[FeishuParser] [{event.account_id}] Unsupported message type "
                f"{event.message_type}, skipping {event.event_id}"
            )
            return None

        message = EnrichedMessage(
            message_id=event.event_id,
            account_id=event.account_id,
            chat_id=event.chat_id,
            chat_kind=event.chat_kind,
            sender_id=event.sender_id,
            message_type=message_type.value,
            was_mentioned=was_mentioned,
        )
        content = _load_content(event.content)

        try:
            keep = await self._enrich(message_type, message, content, event)
        except Exception as e:
            logger.error(
                f"[FeishuParser] Error handling {message_type.value} message "
                f"{event.event_id}: {e}",
                exc_info=True,
            )
            message.text = message_type.fallback_text
            keep = True
        if not keep:
            return None

        if event.parent_id:
            await self._attach_quote(message, event.parent_id)
        return message

    async def _enrich(
        self,
        message_type: MessageType,
        message: EnrichedMessage,
        content: dict[str, Any],
        event: InboundEvent,
    ) -> bool:
        if message_type == MessageType.TEXT:
            message.text = render_text(content, event.mentions)
        elif message_type == MessageType.POST:
            text, image_key = render_post(content)
            message.text = text
            if image_key and await self._download(message, image_key, "image", f"{image_key}.png"):
                message.media_type = "image/png"
                message.text = message.text or "[图片]"
        elif message_type == MessageType.IMAGE:
            image_key = content.get("image_key")
            if image_key:
                ok = await self._download(message, image_key, "image", f"{image_key}.png")
                message.media_type = "image/png" if ok else None
                message.text = "[图片]" if ok else "[图片下载失败]"
        elif message_type == MessageType.FILE:
            await self._enrich_file(message, content, "file", "unknown_file", "文件")
        elif message_type == MessageType.MEDIA:
            await self._enrich_file(message, content, "media", "media_file", "媒体")
        elif message_type == MessageType.STICKER:
            file_key = content.get("file_key")
            if file_key and await self._download(message, file_key, "sticker", f"{file_key}.png"):
                message.media_type = "image/png"
            message.text = "[表情]"
        elif message_type == MessageType.AUDIO:
            return await self._enrich_audio(message, content)
        elif message_type == MessageType.SHARE_CHAT:
            chat_name = content.get("chat_name") or content.get("chat_id") or "未知群聊"
            message.text = f"[分享群聊: {chat_name}]"
        elif message_type == MessageType.SHARE_USER:
            user_name = (
                content.get("user_name") or content.get("name") or content.get("user_id") or "未知用户"
            )
            message.text = f"[名片: {user_name}]"
        elif message_type == MessageType.MERGE_FORWARD:
            items = await self._forwarded_items(message.message_id)
            if items:
                message.text = render_forwarded_lines(items, f"[合并转发消息，共{len(items)}条]")
            else:
                message.text = "[合并转发消息（无法解析内容）]"
        elif message_type == MessageType.LOCATION:
            message.text = render_location(content)
        return True

    async def _enrich_file(
        self,
        message: EnrichedMessage,
        content: dict[str, Any],
        resource_type: str,
        default_name: str,
        label: str,
    ) -> None:
        file_key = content.get("file_key")
        file_name = content.get("file_name") or default_name
        if not file_key:
            return
        if await self._download(message, file_key, resource_type, file_name):
            message.file_name = file_name
            message.media_type = guess_mime_type(file_name)
            message.text = f"[{label}: {file_name}]"
        else:
            message.text = f"[{label}下载失败: {file_name}]"

    async def _enrich_audio(self, message: EnrichedMessage, content: dict[str, Any]) -> bool:
        file_key = content.get("file_key")
        if not file_key:
            return False
        try:
            resource = await self._source.download_resource(message.message_id, file_key, "audio")
        except FeishuResourceDownloadError as e:
            logger.error(f"[FeishuParser] Audio download failed for {message.message_id}: {e}")
            return False

        text = await self._transcriber.transcribe_bytes(resource.content, message.message_id)
        if not text:
            logger.error(f"[FeishuParser] Audio transcription empty, dropping {message.message_id}")
            return False
        message.text = text
        message.original_message_type = MessageType.AUDIO.value
        message.message_type = MessageType.TEXT.value
        return True

    async def _download(
        self,
        message: EnrichedMessage,
        file_key: str,
        resource_type: str,
        file_name: str,
        message_id: str | None = None,
    ) -> bool:
        """Download into the workspace and set ``media_path``; False on failure."""
        try:
            resource = await self._source.download_resource(
                message_id or message.message_id, file_key, resource_type, file_name
            )
            path = save_download(self._workspace, file_name, resource.content)
        except (FeishuResourceDownloadError, OSError) as e:
            logger.error(f"[FeishuParser] Failed to download {file_name}: {e}")
            return False
        message.media_path = str(path)
        logger.info(f"[FeishuParser] Saved {resource_type} to {path}")
        return True

    async def _forwarded_items(self, message_id: str) -> list[dict[str, Any]]:
        items = await self._source.get_message_items(message_id)
        return [item for item in items if item.get("msg_type") != "merge_forward"]

    async def _attach_quote(self, message: EnrichedMessage, parent_id: str) -> None:
        items = await self._source.get_message_items(parent_id)
        if not items:
            return
        quoted = parse_quoted_message(items[0])
        logger.info(f"[FeishuParser] Quoted message: type={quoted.msg_type}, text={quoted.text[:80]}")

        if quoted.image_key and not message.media_path:
            if await self._download(
                message, quoted.image_key, "image", f"{quoted.image_key}.png", parent_id
            ):
                message.media_type = "image/png"
        if quoted.file_key and not quoted.image_key and not message.media_path and quoted.file_name:
            if await self._download(message, quoted.file_key, "file", quoted.file_name, parent_id):
                message.file_name = quoted.file_name
                message.media_type = guess_mime_type(quoted.file_name)

        if quoted.msg_type == MessageType.MERGE_FORWARD.value:
            forwarded = await self._forwarded_items(parent_id)
            if forwarded:
                quoted.text = render_forwarded_lines(forwarded, f"[引用合并转发，共{len(forwarded)}条]")

        if not quoted.text:
            return
        if message.text:
            message.text = f'[引用: "{quoted.text}"]\n{message.text}'
        else:
            message.text = f'[引用: "{quoted.text}"]'

"""
Message import for one conversation.

Fetches a bounded slice of chat history, drops messages that are already
stored, and writes the rest in one grouped insert. Dedup costs one query per
batch regardless of batch size.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatsync.budget import BudgetGuard
from chatsync.provider import ProviderClient, ProviderError
from chatsync.schemas import RemoteMessage
from chatsync.storage import (
    advance_last_message_at,
    backfill_media_url,
    find_existing_messages,
    insert_message_tolerant,
    insert_messages_ignoring_conflicts,
)
from chatsync.utils import epoch_to_iso, make_excerpt, sanitize_text, utc_now_iso

logger = logging.getLogger(__name__)

MEDIA_TYPES = frozenset({"image", "audio", "video", "file", "sticker"})

_PROVIDER_TYPE_MAP = {
    "imageMessage": "image",
    "audioMessage": "audio",
    "pttMessage": "audio",
    "videoMessage": "video",
    "documentMessage": "file",
    "stickerMessage": "sticker",
}


def classify_message_type(tag: Optional[str]) -> str:
    """Map a provider message tag to a local type; unknown tags are text."""
    return _PROVIDER_TYPE_MAP.get(tag or "", "text")


def is_outgoing(message: RemoteMessage) -> bool:
    return message.from_me is True or (message.type or "").lower() == "outgoing"


@dataclass
class SkippedItem:
    kind: str
    ref: str
    reason: str


@dataclass
class ImportResult:
    imported: int = 0
    backfilled: int = 0
    media_resolved: int = 0
    skipped: list = field(default_factory=list)


class MessageImporter:
    """Imports one conversation's recent history per call."""

    def __init__(
        self,
        db: Session,
        provider: ProviderClient,
        subject_id: str,
        history_count: int = 50,
        max_media_resolutions: int = 5,
        subject_sender_label: str = "Me",
    ) -> None:
        self.db = db
        self.provider = provider
        self.subject_id = subject_id
        self.history_count = history_count
        self.max_media_resolutions = max_media_resolutions
        self.subject_sender_label = subject_sender_label

    def import_conversation(self, conversation, chat_id: str, budget: BudgetGuard) -> ImportResult:
        """
        Import the latest history of a remote chat into a local conversation.

        Provider errors on the history call propagate; the caller skips the
        conversation. Problems with individual messages are recorded in the
        result and never stop the batch.
        """
        result = ImportResult()
        raw_messages = self.provider.get_history(chat_id, self.history_count)
        logger.info(f"Fetched {len(raw_messages)} messages for chat {chat_id}")

        batch = []
        for raw in raw_messages:
            try:
                message = RemoteMessage.model_validate(raw)
                ts = epoch_to_iso(message.timestamp)
                if ts is None:
                    raise ValueError("message has no timestamp")
            except (ValidationError, ValueError, TypeError, OverflowError) as e:
                ref = raw.get("idMessage") if isinstance(raw, dict) else None
                self._skip(result, ref or "unknown", e)
                continue
            batch.append((message, ts))

        if not batch:
            return result

        existing = find_existing_messages(
            self.db,
            conversation.id,
            timestamps=[ts for _, ts in batch],
            external_ids=[m.id_message for m, _ in batch if m.id_message],
        )
        by_external_id = {row.external_message_id: row for row in existing if row.external_message_id}
        by_timestamp = {}
        legacy_by_timestamp = {}
        for row in existing:
            by_timestamp.setdefault(row.message_timestamp, row)
            if not row.external_message_id:
                legacy_by_timestamp.setdefault(row.message_timestamp, row)

        keyed_rows = []
        plain_rows = []
        seen = set()
        media_calls = 0

        for message, ts in batch:
            key = message.id_message or f"ts:{ts}"
            if key in seen:
                continue
            seen.add(key)

            try:
                if message.id_message:
                    stored = by_external_id.get(message.id_message) or legacy_by_timestamp.get(ts)
                else:
                    stored = by_timestamp.get(ts)

                if stored is not None:
                    if stored.media_url is None and message.download_url:
                        backfill_media_url(self.db, stored.id, message.download_url)
                        result.backfilled += 1
                    continue

                row = self._build_row(conversation, message, ts)

                if (
                    row["msg_type"] in MEDIA_TYPES
                    and not row["media_url"]
                    and message.id_message
                    and media_calls < self.max_media_resolutions
                    and budget.may_proceed()
                ):
                    media_calls += 1
                    row["media_url"] = self._resolve_media(message.chat_id or chat_id, message.id_message) or None
                    if row["media_url"]:
                        result.media_resolved += 1
            except Exception as e:
                logger.exception(f"Failed to prepare message {key} in chat {chat_id}")
                self._skip(result, message.id_message or ts, e)
                continue

            (keyed_rows if row["external_message_id"] else plain_rows).append(row)

        result.imported += insert_messages_ignoring_conflicts(self.db, keyed_rows)
        for row in plain_rows:
            if insert_message_tolerant(self.db, row):
                result.imported += 1

        advance_last_message_at(conversation, max(ts for _, ts in batch))

        logger.info(
            f"Chat {chat_id}: imported={result.imported}, backfilled={result.backfilled}, "
            f"media_resolved={result.media_resolved}, skipped={len(result.skipped)}"
        )
        return result

    def _build_row(self, conversation, message: RemoteMessage, ts: str) -> dict:
        text_content = sanitize_text(message.text_message or message.caption)
        outgoing = is_outgoing(message)
        if outgoing:
            sender_label = self.subject_sender_label
        else:
            sender_label = sanitize_text(message.sender_name or message.sender_id) or "Unknown"

        return {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation.id,
            "subject_id": self.subject_id,
            "sender_label": sender_label,
            "is_subject_sender": outgoing,
            "msg_type": classify_message_type(message.type_message or message.type),
            "message_timestamp": ts,
            "text_content": text_content,
            "text_excerpt": make_excerpt(text_content),
            "media_url": message.download_url or None,
            "media_thumbnail_url": message.jpeg_thumbnail or None,
            "external_message_id": message.id_message or None,
            "created_at": utc_now_iso(),
        }

    def _resolve_media(self, chat_id: str, message_id: str) -> Optional[str]:
        """Best effort; any failure leaves the message without media."""
        try:
            return self.provider.resolve_media(chat_id, message_id)
        except (ProviderError, httpx.HTTPError, ValidationError) as e:
            logger.warning(f"Media resolution failed for message {message_id}: {e}")
            return None

    @staticmethod
    def _skip(result: ImportResult, ref: str, error: Exception) -> None:
        logger.warning(f"Skipping message {ref}: {error}")
        result.skipped.append(SkippedItem(kind="message", ref=str(ref), reason=str(error)))

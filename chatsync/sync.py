"""
Conversation synchronizer.

One run pulls the most recently active chats of a subject's connected
account and imports their recent history, one conversation at a time, until
the list is exhausted or the time budget runs out. Runs are idempotent, so a
run cut short is finished by the next one.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatsync.budget import BudgetGuard
from chatsync.credentials import resolve_credentials
from chatsync.importer import MessageImporter, SkippedItem
from chatsync.provider import ProviderClient, RateLimitedClient
from chatsync.retry import RetryPolicy
from chatsync.schemas import RemoteConversation
from chatsync.storage import (
    create_conversation,
    find_conversation_by_external_id,
    find_legacy_conversation,
)
from chatsync.utils import epoch_to_iso, sanitize_text

logger = logging.getLogger(__name__)

# Provider pseudo-chats that never hold a real conversation
_SYSTEM_CHAT_IDS = frozenset({"status@broadcast"})


@dataclass
class SyncOptions:
    """Per-run caps. Keep runs small; busy accounts need more runs, not bigger ones."""
    max_conversations: int = 5
    max_conversations_ceiling: int = 20
    history_count: int = 50
    max_media_resolutions: int = 5
    conversation_delay: float = 1.0
    subject_sender_label: str = "Me"

    @classmethod
    def from_settings(cls, settings) -> "SyncOptions":
        return cls(
            max_conversations=settings.SYNC_MAX_CONVERSATIONS,
            max_conversations_ceiling=settings.SYNC_MAX_CONVERSATIONS_CEILING,
            history_count=settings.SYNC_HISTORY_COUNT,
            max_media_resolutions=settings.SYNC_MAX_MEDIA_RESOLUTIONS,
            conversation_delay=settings.SYNC_CONVERSATION_DELAY_SECONDS,
            subject_sender_label=settings.SYNC_SUBJECT_SENDER_LABEL,
        )

    def conversation_limit(self, requested: Optional[int] = None) -> int:
        if requested is None:
            return self.max_conversations
        return max(1, min(requested, self.max_conversations_ceiling))


@dataclass
class SyncSummary:
    conversations_processed: int = 0
    messages_imported: int = 0
    total_conversations_available: int = 0
    budget_exhausted: bool = False
    elapsed_ms: int = 0
    skipped: list = field(default_factory=list)


def is_valid_chat_id(chat_id: str) -> bool:
    if not chat_id:
        return False
    if chat_id.startswith("0@") or chat_id in _SYSTEM_CHAT_IDS:
        return False
    return True


def select_conversations(chats: list, limit: int) -> list:
    """Real chats only, most recently active first, at most `limit` of them."""
    valid = [chat for chat in chats if is_valid_chat_id(chat.id)]
    valid.sort(key=lambda chat: chat.last_message_time or 0, reverse=True)
    return valid[:limit]


class ChatSynchronizer:
    """Maps remote chats to local conversations and drives the importer."""

    def __init__(
        self,
        db: Session,
        provider: ProviderClient,
        budget: BudgetGuard,
        options: Optional[SyncOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.provider = provider
        self.budget = budget
        self.options = options or SyncOptions()
        self.sleep = sleep

    def run(self, subject_id: str, max_conversations: Optional[int] = None) -> SyncSummary:
        """
        Sync a subject's most recent conversations.

        Failure to list conversations propagates. Anything that goes wrong
        inside one conversation is rolled back, recorded in the summary and
        the loop moves on.
        """
        summary = SyncSummary()
        remote_chats = self.provider.list_conversations()
        summary.total_conversations_available = len(remote_chats)

        selected = select_conversations(remote_chats, self.options.conversation_limit(max_conversations))
        logger.info(
            f"Processing {len(selected)} of {len(remote_chats)} chats for subject {subject_id}"
        )

        importer = MessageImporter(
            self.db,
            self.provider,
            subject_id,
            history_count=self.options.history_count,
            max_media_resolutions=self.options.max_media_resolutions,
            subject_sender_label=self.options.subject_sender_label,
        )

        for index, chat in enumerate(selected):
            if index > 0 and self.options.conversation_delay > 0 and self.budget.may_proceed():
                self.sleep(self.options.conversation_delay)
            if not self.budget.may_proceed():
                break

            try:
                conversation = self.resolve_conversation(subject_id, chat)
                result = importer.import_conversation(conversation, chat.id, self.budget)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Error processing chat {chat.id}")
                summary.skipped.append(SkippedItem(kind="conversation", ref=chat.id, reason=str(e)))
                continue

            summary.conversations_processed += 1
            summary.messages_imported += result.imported
            summary.skipped.extend(result.skipped)

        summary.budget_exhausted = self.budget.exhausted
        summary.elapsed_ms = self.budget.elapsed_ms()
        logger.info(
            f"Sync complete in {summary.elapsed_ms}ms: {summary.conversations_processed} chats, "
            f"{summary.messages_imported} messages, budget_exhausted={summary.budget_exhausted}"
        )
        return summary

    def resolve_conversation(self, subject_id: str, chat: RemoteConversation):
        """
        Find or create the local conversation for a remote chat.

        Lookup order: provider chat id, then a legacy row with the same name
        and no chat id (adopted by recording the id), then a new row.
        """
        name = sanitize_text(chat.name) or sanitize_text(chat.id)

        conversation = find_conversation_by_external_id(self.db, subject_id, chat.id)
        if conversation is not None:
            if conversation.external_name != name:
                logger.info(f"Chat {chat.id} renamed, updating display name")
                conversation.external_name = name
            return conversation

        conversation = find_legacy_conversation(self.db, subject_id, name)
        if conversation is not None:
            logger.info(f"Adopting legacy conversation {conversation.id} for chat {chat.id}")
            conversation.external_chat_id = chat.id
            return conversation

        try:
            return create_conversation(
                self.db,
                subject_id=subject_id,
                external_chat_id=chat.id,
                external_name=name,
                is_group=chat.is_group,
                last_message_at=epoch_to_iso(chat.last_message_time),
            )
        except IntegrityError:
            # Another run created it between our lookup and insert
            conversation = find_conversation_by_external_id(self.db, subject_id, chat.id)
            if conversation is None:
                raise
            return conversation


def run_sync(
    db: Session,
    http: httpx.Client,
    subject_id: str,
    settings,
    budget: BudgetGuard,
    max_conversations: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncSummary:
    """
    Resolve credentials and sync one subject. The caller has already
    authorized the request and started the budget clock.

    Raises:
        NoCredentials: the subject is not connected.
        ProviderError, httpx.TransportError: the chat listing failed.
    """
    credentials = resolve_credentials(db, subject_id, fallback=settings.default_credentials())
    requester = RateLimitedClient(http, RetryPolicy.from_settings(settings, sleep=sleep))
    provider = ProviderClient(
        credentials.instance_id,
        credentials.token,
        requester,
        base_url=settings.PROVIDER_BASE_URL,
    )
    synchronizer = ChatSynchronizer(
        db,
        provider,
        budget,
        options=SyncOptions.from_settings(settings),
        sleep=sleep,
    )
    return synchronizer.run(subject_id, max_conversations=max_conversations)

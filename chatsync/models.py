"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, Text, text

from chatsync.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Subject(Base):
    """
    The monitored identity (a child profile) owned by a parent principal.

    Table: subjects
    Rows are created by the parent-facing app; the synchronizer only reads them.
    """
    __tablename__ = "subjects"

    id = Column(String, primary_key=True, default=_new_id)
    owner_id = Column(String, nullable=False, index=True)
    display_name = Column(String, nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class ConnectorCredential(Base):
    """
    Provider credentials for one subject's connected messaging account.

    Table: connector_credentials
    Only rows with status "authorized" are usable for a sync run.
    """
    __tablename__ = "connector_credentials"

    id = Column(String, primary_key=True, default=_new_id)
    subject_id = Column(String, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    instance_id = Column(String, nullable=True)
    api_token = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(String, nullable=False)


class Conversation(Base):
    """
    Local mirror of one remote chat thread.

    Table: conversations
    Matched by (subject_id, external_chat_id); rows imported before the
    provider id was recorded are matched once by name and then adopted.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        Index(
            "ix_conversations_subject_external",
            "subject_id",
            "external_chat_id",
            unique=True,
            sqlite_where=text("external_chat_id IS NOT NULL"),
            postgresql_where=text("external_chat_id IS NOT NULL"),
        ),
        Index("ix_conversations_subject_name", "subject_id", "external_name"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    subject_id = Column(String, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    external_chat_id = Column(String, nullable=True)
    external_name = Column(String, nullable=False)
    is_group = Column(Boolean, nullable=False, default=False)
    last_message_at = Column(String, nullable=True)  # ISO-8601 UTC string
    created_at = Column(String, nullable=False)


class Message(Base):
    """
    An imported chat message. Append-only.

    Table: messages
    Dedup key, always within one conversation: external_message_id when the
    provider supplies one, otherwise message_timestamp. Both are enforced by
    partial unique indexes so overlapping runs cannot store a message twice.
    The provider reuses a message id on every participant's copy, so the
    same id may appear once per conversation.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index(
            "ux_messages_conversation_external_id",
            "conversation_id",
            "external_message_id",
            unique=True,
            sqlite_where=text("external_message_id IS NOT NULL"),
            postgresql_where=text("external_message_id IS NOT NULL"),
        ),
        Index(
            "ux_messages_conversation_ts_no_external",
            "conversation_id",
            "message_timestamp",
            unique=True,
            sqlite_where=text("external_message_id IS NULL"),
            postgresql_where=text("external_message_id IS NULL"),
        ),
        Index("ix_messages_conversation_ts", "conversation_id", "message_timestamp"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    conversation_id = Column(String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    subject_id = Column(String, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_label = Column(String, nullable=False)
    is_subject_sender = Column(Boolean, nullable=False, default=False)
    msg_type = Column(String, nullable=False)
    message_timestamp = Column(String, nullable=False)  # ISO-8601 UTC string
    text_content = Column(Text, nullable=True)
    text_excerpt = Column(String, nullable=True)
    media_url = Column(Text, nullable=True)
    media_thumbnail_url = Column(Text, nullable=True)
    external_message_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

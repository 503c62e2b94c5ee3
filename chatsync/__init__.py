"""Pulls a connected messaging account's chats and messages into local storage."""

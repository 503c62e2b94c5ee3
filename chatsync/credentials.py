"""Provider credential lookup for a subject."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from chatsync.storage import get_authorized_credential

logger = logging.getLogger(__name__)


class NoCredentials(Exception):
    """The subject has no usable provider credentials and no fallback is configured."""

    def __init__(self, subject_id: str) -> None:
        self.subject_id = subject_id
        super().__init__("WhatsApp not connected. Please connect first.")


@dataclass(frozen=True)
class ProviderCredentials:
    instance_id: str
    token: str

    def __repr__(self) -> str:
        return f"ProviderCredentials(instance_id={self.instance_id!r}, token='***')"


def resolve_credentials(
    db: Session,
    subject_id: str,
    fallback: Optional[ProviderCredentials] = None,
) -> ProviderCredentials:
    """
    Resolve the credential pair to sync a subject with.

    Uses the subject's authorized connector credential when both its fields
    are set; otherwise the injected fallback pair.

    Raises:
        NoCredentials: neither is available.
    """
    record = get_authorized_credential(db, subject_id)
    if record is not None and record.instance_id and record.api_token:
        logger.info(f"Using connector credentials for subject {subject_id}, instance {record.instance_id}")
        return ProviderCredentials(instance_id=record.instance_id, token=record.api_token)

    if fallback is not None:
        logger.info(f"No connector credentials for subject {subject_id}, using default instance {fallback.instance_id}")
        return fallback

    logger.error(f"No provider credentials found for subject {subject_id}")
    raise NoCredentials(subject_id)

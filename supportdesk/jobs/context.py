"""Per-invocation dependencies handed to job handlers."""

from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.orm import Session

from supportdesk.core.config import Settings, settings as default_settings
from supportdesk.db.enums import TokenProvider
from supportdesk.services import settings_service
from supportdesk.services.ai_provider import AIProvider, OpenAIProvider
from supportdesk.services.cdr_api import CdrClient
from supportdesk.services.commerce_api import CommerceClient
from supportdesk.services.mailbox_client import MailboxClient
from supportdesk.services.settings_service import ImapSettings
from supportdesk.services.smtp_notifier import SmtpNotifier
from supportdesk.services.token_service import TokenManager


def default_owner_id() -> str:
    """Lease owner id: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class WorkerContext:
    owner_id: str
    tokens: TokenManager
    commerce: CommerceClient
    ai: AIProvider
    cdr: CdrClient
    mailbox_factory: Callable[[ImapSettings], MailboxClient] = MailboxClient
    notifier: SmtpNotifier | None = None
    settings: Settings = field(default_factory=lambda: default_settings)


def build_worker_context(db: Session, owner_id: str | None = None) -> WorkerContext:
    """Wire the production adapters for one dispatcher invocation."""
    client_id, client_secret, store_name = settings_service.get_ikas_credentials(db)
    commerce = CommerceClient(
        client_id=client_id,
        client_secret=client_secret,
        store_name=store_name,
    )
    notifier = SmtpNotifier()
    return WorkerContext(
        owner_id=owner_id or default_owner_id(),
        tokens=TokenManager(db, {TokenProvider.IKAS: commerce}),
        commerce=commerce,
        ai=OpenAIProvider(default_model=default_settings.OPENAI_MODEL),
        cdr=CdrClient(),
        notifier=notifier if notifier.is_configured else None,
    )

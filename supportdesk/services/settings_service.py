"""Operator settings service.

Reads the key/value settings maintained by operators (knowledge base, AI
model, mailbox credentials). Environment configuration is the fallback for
provider credentials. Values under SECRET_KEYS are Fernet-encrypted at rest.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from supportdesk.core.config import settings
from supportdesk.core.encryption import decrypt_token, encrypt_token
from supportdesk.db.models import AppSetting

logger = logging.getLogger(__name__)


# Knowledge base sections, in prompt order
KNOWLEDGE_BASE_KEYS = (
    ("ai_kb_store_info", "Mağaza Bilgileri"),
    ("ai_kb_shipping", "Kargo ve Teslimat"),
    ("ai_kb_campaigns", "Kampanyalar"),
    ("ai_kb_return_policy", "İade ve Değişim Politikası"),
    ("ai_kb_general", "Genel Bilgiler"),
)

OPENAI_API_KEY = "openai_api_key"
OPENAI_MODEL = "openai_model"

IMAP_HOST = "mail_imap_host"
IMAP_PORT = "mail_imap_port"
IMAP_USER = "mail_imap_user"
IMAP_PASSWORD = "mail_imap_password"
IMAP_TLS = "mail_imap_tls"

IKAS_CLIENT_ID = "ikas_client_id"
IKAS_CLIENT_SECRET = "ikas_client_secret"
IKAS_STORE_NAME = "ikas_store_name"

SECRET_KEYS = frozenset({OPENAI_API_KEY, IMAP_PASSWORD, IKAS_CLIENT_SECRET})


@dataclass(frozen=True)
class ImapSettings:
    host: str
    port: int
    user: str
    password: str
    tls: bool
    folder: str = "INBOX"

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)


def get_settings_map(db: Session, keys: list[str] | tuple[str, ...] | None = None) -> dict[str, str]:
    """Return settings as a {key: value} dict, optionally restricted to keys."""
    query = db.query(AppSetting)
    if keys is not None:
        query = query.filter(AppSetting.key.in_(list(keys)))
    return {row.key: _stored_value(row) for row in query.all()}


def _stored_value(row: AppSetting) -> str:
    if row.key not in SECRET_KEYS or not row.value:
        return row.value or ""
    try:
        return decrypt_token(row.value)
    except ValueError:
        logger.warning("Setting %s could not be decrypted, treating it as unset", row.key)
        return ""


def get_setting(db: Session, key: str, default: str = "") -> str:
    row = db.get(AppSetting, key)
    value = _stored_value(row) if row is not None else ""
    return value or default


def set_setting(db: Session, key: str, value: str) -> AppSetting:
    """Upsert a setting (used by the CLI and tests; the operator UI owns the rest)."""
    value = value or ""
    if key in SECRET_KEYS:
        value = encrypt_token(value)
    row = db.get(AppSetting, key)
    if row is None:
        row = AppSetting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
    db.commit()
    return row


def get_imap_settings(db: Session) -> ImapSettings:
    """Mailbox settings, operator values first, environment second."""
    values = get_settings_map(db, (IMAP_HOST, IMAP_PORT, IMAP_USER, IMAP_PASSWORD, IMAP_TLS))
    port_raw = values.get(IMAP_PORT) or ""
    tls_raw = values.get(IMAP_TLS)
    return ImapSettings(
        host=values.get(IMAP_HOST) or settings.IMAP_HOST,
        port=int(port_raw) if port_raw.isdigit() else settings.IMAP_PORT,
        user=values.get(IMAP_USER) or settings.IMAP_USER,
        password=values.get(IMAP_PASSWORD) or settings.IMAP_PASSWORD,
        tls=(tls_raw.lower() == "true") if tls_raw else settings.IMAP_TLS,
        folder=settings.IMAP_FOLDER,
    )


def get_ai_config(db: Session) -> tuple[str, str]:
    """Return (api_key, model) for AI completion."""
    values = get_settings_map(db, (OPENAI_API_KEY, OPENAI_MODEL))
    api_key = values.get(OPENAI_API_KEY) or settings.OPENAI_API_KEY
    model = values.get(OPENAI_MODEL) or settings.OPENAI_MODEL
    return api_key, model


def get_knowledge_base(db: Session) -> list[tuple[str, str]]:
    """Non-empty knowledge base sections as (title, content) pairs."""
    values = get_settings_map(db, [key for key, _ in KNOWLEDGE_BASE_KEYS])
    return [
        (title, values[key].strip())
        for key, title in KNOWLEDGE_BASE_KEYS
        if values.get(key, "").strip()
    ]


def get_ikas_credentials(db: Session) -> tuple[str, str, str]:
    """Return (client_id, client_secret, store_name)."""
    values = get_settings_map(db, (IKAS_CLIENT_ID, IKAS_CLIENT_SECRET, IKAS_STORE_NAME))
    return (
        values.get(IKAS_CLIENT_ID) or settings.IKAS_CLIENT_ID,
        values.get(IKAS_CLIENT_SECRET) or settings.IKAS_CLIENT_SECRET,
        values.get(IKAS_STORE_NAME) or settings.IKAS_STORE_NAME,
    )

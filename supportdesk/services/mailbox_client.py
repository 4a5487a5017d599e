"""IMAP mailbox adapter.

Lists messages newer than a UID watermark and parses them into RawMessage
records. Messages are fetched with BODY.PEEK[] so the mailbox's seen flags
are left to the operators.
"""

from __future__ import annotations

import logging
import re
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email import message_from_bytes
from email.header import decode_header
from email.message import EmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from supportdesk.core.exceptions import AuthError, PermanentValidationError, TransientIntegrationError
from supportdesk.services.settings_service import ImapSettings

logger = logging.getLogger(__name__)

FETCH_ITEM = "BODY.PEEK[]"
FETCH_KEY = b"BODY[]"

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"[ \t]+")


@dataclass
class RawMessage:
    """A mailbox message as seen by the mail_fetch handler."""

    uid: int
    message_id: str
    from_email: str
    from_name: str | None
    to_email: str | None
    subject: str
    body_text: str
    body_html: str | None
    received_at: datetime | None
    in_reply_to: str | None = None


# =============================================================================
# Parsing
# =============================================================================


def _decode(value: str | None) -> str:
    if not value:
        return ""
    result = ""
    for part, charset in decode_header(str(value)):
        if isinstance(part, bytes):
            try:
                result += part.decode(charset or "utf-8", errors="replace")
            except LookupError:
                result += part.decode("utf-8", errors="replace")
        else:
            result += part
    return result.strip()


def html_to_text(html: str) -> str:
    text = re.sub(r"(?i)<br\s*/?>|</p>", "\n", html)
    text = _TAG_RE.sub("", text)
    return "\n".join(_WS_RE.sub(" ", line).strip() for line in text.splitlines()).strip()


def _extract_body(msg: EmailMessage) -> tuple[str | None, str | None]:
    body_plain = None
    body_html = None
    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        try:
            if content_type == "text/plain" and body_plain is None:
                body_plain = part.get_content()
            elif content_type == "text/html" and body_html is None:
                body_html = part.get_content()
        except (LookupError, UnicodeDecodeError) as exc:
            logger.warning("Failed to decode %s part: %s", content_type, type(exc).__name__)
    return body_plain, body_html


def parse_raw_message(uid: int, raw: bytes) -> RawMessage:
    """Parse RFC822 bytes into a RawMessage."""
    msg = message_from_bytes(raw, policy=email_policy)

    message_id = str(msg.get("Message-ID", "")).strip().strip("<>").strip()
    if not message_id:
        message_id = f"generated-{uid}-{uuid.uuid4()}@supportdesk.local"
        logger.warning("Message uid=%s has no Message-ID, generated one", uid)

    from_pairs = getaddresses([str(msg.get("From", ""))])
    from_name, from_email = from_pairs[0] if from_pairs else ("", "")
    to_pairs = getaddresses([str(msg.get("To", ""))])
    to_email = to_pairs[0][1] if to_pairs and to_pairs[0][1] else None

    received_at = None
    date_header = msg.get("Date")
    if date_header:
        try:
            received_at = parsedate_to_datetime(str(date_header))
            if received_at.tzinfo is None:
                received_at = received_at.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            logger.warning("Unparseable Date header on uid=%s", uid)

    body_plain, body_html = _extract_body(msg)
    if not body_plain and body_html:
        body_plain = html_to_text(body_html)

    in_reply_to = str(msg.get("In-Reply-To", "")).strip().strip("<>").strip() or None

    return RawMessage(
        uid=uid,
        message_id=message_id,
        from_email=(from_email or "").strip().lower(),
        from_name=_decode(from_name) or None,
        to_email=to_email.lower() if to_email else None,
        subject=_decode(msg.get("Subject")),
        body_text=(body_plain or "").strip(),
        body_html=body_html,
        received_at=received_at,
        in_reply_to=in_reply_to,
    )


# =============================================================================
# Client
# =============================================================================


class MailboxClient:
    """
    Blocking IMAP client; use as a context manager.

        with MailboxClient(imap_settings) as mailbox:
            messages = mailbox.list_unseen(since_uid=1200, limit=50)
    """

    def __init__(self, config: ImapSettings, timeout: float = 30.0):
        if not config.is_configured:
            raise PermanentValidationError("Mail settings not configured")
        self.config = config
        self.timeout = timeout
        self._client: IMAPClient | None = None
        self.skipped_uids: list[int] = []

    def __enter__(self) -> "MailboxClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self) -> None:
        try:
            client = IMAPClient(
                self.config.host,
                port=self.config.port,
                ssl=self.config.tls,
                timeout=self.timeout,
                use_uid=True,
            )
        except (socket.error, OSError) as exc:
            raise TransientIntegrationError(f"IMAP connection failed: {type(exc).__name__}") from exc

        try:
            client.login(self.config.user, self.config.password)
            client.select_folder(self.config.folder, readonly=True)
        except LoginError as exc:
            client.shutdown()
            raise AuthError("IMAP login rejected") from exc
        except (IMAPClientAbortError, socket.error, OSError) as exc:
            client.shutdown()
            raise TransientIntegrationError(f"IMAP session failed: {type(exc).__name__}") from exc
        self._client = client
        logger.info("Connected to IMAP host=%s folder=%s", self.config.host, self.config.folder)

    def close(self) -> None:
        if self._client is None:
            return
        try:
            self._client.logout()
        except (IMAPClientError, socket.error, OSError):
            logger.debug("IMAP logout failed", exc_info=True)
        self._client = None

    @property
    def client(self) -> IMAPClient:
        if self._client is None:
            raise RuntimeError("MailboxClient is not connected")
        return self._client

    def search_uids(self, since_uid: int = 0) -> list[int]:
        """UIDs newer than since_uid, or all unseen messages on first run."""
        criteria = ["UID", f"{since_uid + 1}:*"] if since_uid > 0 else ["UNSEEN"]
        try:
            uids = self.client.search(criteria)
        except (IMAPClientAbortError, socket.error, OSError) as exc:
            raise TransientIntegrationError(f"IMAP search failed: {type(exc).__name__}") from exc
        # "N:*" always matches the highest UID, even when it is below N
        return sorted(uid for uid in uids if uid > since_uid)

    def list_unseen(self, since_uid: int = 0, limit: int | None = None) -> list[RawMessage]:
        """
        Parsed messages with UID greater than since_uid, oldest first.

        UIDs that come back without a body or fail to parse are logged and
        left in skipped_uids so callers can still move their watermark past them.
        """
        self.skipped_uids = []
        uids = self.search_uids(since_uid)
        if limit:
            uids = uids[:limit]
        if not uids:
            return []
        try:
            response = self.client.fetch(uids, [FETCH_ITEM])
        except (IMAPClientAbortError, socket.error, OSError) as exc:
            raise TransientIntegrationError(f"IMAP fetch failed: {type(exc).__name__}") from exc

        messages = []
        for uid in uids:
            data = response.get(uid) or {}
            raw = data.get(FETCH_KEY)
            if not raw:
                logger.warning("IMAP returned no body for uid=%s", uid)
                self.skipped_uids.append(uid)
                continue
            try:
                messages.append(parse_raw_message(uid, raw))
            except Exception as exc:
                logger.warning("Skipping unparseable message uid=%s: %s", uid, type(exc).__name__, exc_info=True)
                self.skipped_uids.append(uid)
        return messages

    def fetch(self, uid: int) -> RawMessage:
        """A single message by UID."""
        try:
            response = self.client.fetch([uid], [FETCH_ITEM])
        except (IMAPClientAbortError, socket.error, OSError) as exc:
            raise TransientIntegrationError(f"IMAP fetch failed: {type(exc).__name__}") from exc
        raw = (response.get(uid) or {}).get(FETCH_KEY)
        if not raw:
            raise PermanentValidationError(f"Message uid={uid} not found")
        return parse_raw_message(uid, raw)

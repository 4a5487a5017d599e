"""IMAP and SMTP adapters with the network libraries stubbed out."""

import smtplib
from datetime import datetime, timezone

import pytest

from supportdesk.core.exceptions import AuthError, PermanentValidationError, TransientIntegrationError
from supportdesk.services import mailbox_client, smtp_notifier
from supportdesk.services.mailbox_client import MailboxClient, parse_raw_message
from supportdesk.services.settings_service import ImapSettings
from supportdesk.services.smtp_notifier import SmtpNotifier, render_notification

MULTIPART = b"""\
Message-ID: <abc-1@mail.example.com>
From: =?utf-8?q?Ay=C5=9Fe_Y=C4=B1lmaz?= <Ayse@Example.com>
To: Destek <destek@magaza.com>
Subject: =?utf-8?q?Sipari=C5=9F_4521_nerede=3F?=
Date: Thu, 01 Oct 2026 12:00:00 +0300
In-Reply-To: <prev@mail.example.com>
MIME-Version: 1.0
Content-Type: multipart/alternative; boundary="b1"

--b1
Content-Type: text/plain; charset="utf-8"

Merhaba, 4521 numaral\xc4\xb1 sipari\xc5\x9fim nerede?
--b1
Content-Type: text/html; charset="utf-8"

<p>Merhaba</p>
--b1--
"""

HTML_ONLY = b"""\
From: musteri@example.com
Subject: Kargo
Content-Type: text/html; charset="utf-8"

<p>Kargom<br>gelmedi</p>
"""


def test_parse_multipart_message():
    message = parse_raw_message(7, MULTIPART)

    assert message.uid == 7
    assert message.message_id == "abc-1@mail.example.com"
    assert message.from_email == "ayse@example.com"
    assert message.from_name == "Ayşe Yılmaz"
    assert message.to_email == "destek@magaza.com"
    assert message.subject == "Sipariş 4521 nerede?"
    assert message.body_text == "Merhaba, 4521 numaralı siparişim nerede?"
    assert message.body_html.strip() == "<p>Merhaba</p>"
    assert message.received_at == datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)
    assert message.in_reply_to == "prev@mail.example.com"


def test_parse_html_only_message_generates_id_and_text():
    message = parse_raw_message(8, HTML_ONLY)

    assert message.message_id.startswith("generated-8-")
    assert message.body_text == "Kargom\ngelmedi"
    assert message.received_at is None


class FakeIMAPClient:
    instances: list["FakeIMAPClient"] = []

    def __init__(self, host, port=None, ssl=True, timeout=None, use_uid=True):
        self.host = host
        self.searches = []
        self.logged_out = False
        FakeIMAPClient.instances.append(self)

    def login(self, user, password):
        if password == "wrong":
            from imapclient.exceptions import LoginError

            raise LoginError("bad credentials")

    def select_folder(self, folder, readonly=False):
        self.folder = folder

    def search(self, criteria):
        self.searches.append(criteria)
        return [12, 10, 11]

    def fetch(self, uids, items):
        return {uid: {b"BODY[]": MULTIPART.replace(b"abc-1", f"abc-{uid}".encode())} for uid in uids}

    def logout(self):
        self.logged_out = True

    def shutdown(self):
        pass


@pytest.fixture
def fake_imap(monkeypatch):
    FakeIMAPClient.instances = []
    monkeypatch.setattr(mailbox_client, "IMAPClient", FakeIMAPClient)
    return FakeIMAPClient


def _config(**overrides) -> ImapSettings:
    data = {"host": "imap.example.com", "port": 993, "user": "destek", "password": "secret", "tls": True}
    data.update(overrides)
    return ImapSettings(**data)


def test_list_unseen_after_watermark(fake_imap):
    with MailboxClient(_config()) as mailbox:
        messages = mailbox.list_unseen(since_uid=10, limit=5)

    client = fake_imap.instances[0]
    assert client.searches == [["UID", "11:*"]]
    assert [m.uid for m in messages] == [11, 12]
    assert messages[0].message_id == "abc-11@mail.example.com"
    assert client.logged_out is True


class PoisonedIMAPClient(FakeIMAPClient):
    def search(self, criteria):
        self.searches.append(criteria)
        return [10, 11, 12, 13]

    def fetch(self, uids, items):
        response = super().fetch([uid for uid in uids if uid != 13], items)
        response[11] = {b"BODY[]": b'Message-ID: <p@x>\r\nFrom: "\r\n\r\nbody'}
        return response


def test_list_unseen_skips_unparseable_messages(monkeypatch):
    monkeypatch.setattr(mailbox_client, "IMAPClient", PoisonedIMAPClient)

    with MailboxClient(_config()) as mailbox:
        messages = mailbox.list_unseen(since_uid=9)

    assert [m.uid for m in messages] == [10, 12]
    assert mailbox.skipped_uids == [11, 13]


def test_first_run_searches_unseen(fake_imap):
    with MailboxClient(_config()) as mailbox:
        messages = mailbox.list_unseen(limit=2)

    assert fake_imap.instances[0].searches == [["UNSEEN"]]
    assert [m.uid for m in messages] == [10, 11]


def test_fetch_single_message(fake_imap, monkeypatch):
    with MailboxClient(_config()) as mailbox:
        message = mailbox.fetch(42)
        monkeypatch.setattr(mailbox.client, "fetch", lambda uids, items: {})
        with pytest.raises(PermanentValidationError):
            mailbox.fetch(43)

    assert message.message_id == "abc-42@mail.example.com"


def test_login_rejected_is_auth_error(fake_imap):
    with pytest.raises(AuthError):
        with MailboxClient(_config(password="wrong")):
            pass


def test_unconfigured_mailbox():
    with pytest.raises(PermanentValidationError):
        MailboxClient(_config(host=""))


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def starttls(self):
        pass

    def login(self, user, password):
        if password == "wrong":
            raise smtplib.SMTPAuthenticationError(535, b"nope")

    def send_message(self, message):
        FakeSMTP.sent.append(message)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(smtp_notifier.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _notifier(**overrides) -> SmtpNotifier:
    data = {
        "host": "smtp.example.com",
        "port": 587,
        "user": "destek@magaza.com",
        "password": "secret",
        "from_email": "destek@magaza.com",
        "use_ssl": False,
    }
    data.update(overrides)
    return SmtpNotifier(**data)


def test_send_return_notification(fake_smtp):
    _notifier().send("musteri@example.com", "REQUESTED", {"return_number": "IKAS-4521", "order_number": "4521"})

    message = fake_smtp.sent[0]
    assert message["To"] == "musteri@example.com"
    assert message["From"] == "destek@magaza.com"
    assert "IKAS-4521" in message.get_body(preferencelist=("plain",)).get_content()


def test_smtp_login_rejected(fake_smtp):
    with pytest.raises(AuthError):
        _notifier(password="wrong").send("musteri@example.com", "REQUESTED", {})


def test_smtp_not_configured():
    with pytest.raises(PermanentValidationError):
        _notifier(host="").send("musteri@example.com", "REQUESTED", {})


def test_smtp_connection_failure_is_transient(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError()

    monkeypatch.setattr(smtp_notifier.smtplib, "SMTP", refuse)
    with pytest.raises(TransientIntegrationError):
        _notifier().send("musteri@example.com", "REQUESTED", {})


def test_render_notification_escapes_html():
    subject, text, html = render_notification("APPROVED", {"customer_name": "<Ayşe>", "total_amount": "349.90"})

    assert subject
    assert "Merhaba <Ayşe>," in text
    assert "İade Tutarı: 349.90 TL" in text
    assert "&lt;Ayşe&gt;" in html


def test_render_unknown_template():
    with pytest.raises(PermanentValidationError):
        render_notification("LOST", {})

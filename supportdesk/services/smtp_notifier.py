"""SMTP customer notifications for return status changes."""

from __future__ import annotations

import logging
import smtplib
import socket
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape

from supportdesk.core.config import settings
from supportdesk.core.exceptions import AuthError, PermanentValidationError, TransientIntegrationError
from supportdesk.jobs.utils import mask_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationTemplate:
    subject: str
    title: str
    message: str


RETURN_STATUS_TEMPLATES: dict[str, NotificationTemplate] = {
    "REQUESTED": NotificationTemplate(
        subject="İade Talebiniz Alındı",
        title="İade Talebiniz Alındı",
        message="İade talebiniz başarıyla oluşturuldu. En kısa sürede incelenerek size bilgi verilecektir.",
    ),
    "APPROVED": NotificationTemplate(
        subject="İade Talebiniz Onaylandı",
        title="İade Talebiniz Onaylandı",
        message="İade talebiniz onaylandı. Ürünlerinizi belirtilen adrese gönderebilirsiniz.",
    ),
    "REJECTED": NotificationTemplate(
        subject="İade Talebiniz Reddedildi",
        title="İade Talebiniz Reddedildi",
        message=(
            "Üzgünüz, iade talebiniz uygun bulunmadı. Detaylı bilgi için müşteri "
            "hizmetleri ile iletişime geçebilirsiniz."
        ),
    ),
    "IN_TRANSIT": NotificationTemplate(
        subject="Kargo Bilgisi Güncellendi",
        title="Kargonuz Yolda",
        message="İade kargonuz tarafımıza ulaşmak üzere.",
    ),
    "RECEIVED": NotificationTemplate(
        subject="Ürünleriniz Teslim Alındı",
        title="Ürünleriniz Teslim Alındı",
        message=(
            "İade ürünleriniz tarafımıza ulaştı. Kontrol işlemleri sonrasında iade "
            "tutarı hesabınıza aktarılacaktır."
        ),
    ),
    "COMPLETED": NotificationTemplate(
        subject="İade İşleminiz Tamamlandı",
        title="İade Tamamlandı",
        message="İade işleminiz başarıyla tamamlandı. İade tutarı hesabınıza aktarıldı.",
    ),
}


def render_notification(template_key: str, variables: dict) -> tuple[str, str, str]:
    """Return (subject, text, html) for a return status template."""
    template = RETURN_STATUS_TEMPLATES.get(template_key)
    if template is None:
        raise PermanentValidationError(f"Unknown notification template: {template_key}")

    name = variables.get("customer_name") or "Değerli Müşterimiz"
    lines = [f"Merhaba {name},", "", template.message, ""]
    if variables.get("return_number"):
        lines.append(f"İade Numarası: {variables['return_number']}")
    if variables.get("order_number"):
        lines.append(f"Sipariş Numarası: #{variables['order_number']}")
    if variables.get("total_amount"):
        lines.append(f"İade Tutarı: {variables['total_amount']} TL")
    lines += ["", "Herhangi bir sorunuz varsa müşteri hizmetlerimize ulaşabilirsiniz."]
    text = "\n".join(lines)

    html_rows = "".join(f"<p>{escape(line)}</p>" for line in lines if line)
    html = f"<html><body><h1>{escape(template.title)}</h1>{html_rows}</body></html>"
    return template.subject, text, html


class SmtpNotifier:
    """Blocking SMTP sender."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        from_email: str | None = None,
        use_ssl: bool | None = None,
        timeout: float = 20.0,
    ):
        self.host = host if host is not None else settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.user = user if user is not None else settings.SMTP_USER
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.from_email = from_email or settings.SMTP_FROM_EMAIL or self.user
        self.use_ssl = settings.SMTP_USE_SSL if use_ssl is None else use_ssl
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        smtp.starttls()
        return smtp

    def send(self, to: str, template: str, variables: dict) -> None:
        if not self.is_configured:
            raise PermanentValidationError("SMTP not configured")
        if not to:
            raise PermanentValidationError("Notification recipient missing")

        subject, text, html = render_notification(template, variables)
        message = EmailMessage()
        message["From"] = self.from_email
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        try:
            with self._connect() as smtp:
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            raise AuthError("SMTP login rejected") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentValidationError("SMTP recipient refused") from exc
        except (smtplib.SMTPException, socket.error, OSError) as exc:
            raise TransientIntegrationError(f"SMTP send failed: {type(exc).__name__}") from exc

        logger.info("Sent %s notification to %s", template, mask_email(to))

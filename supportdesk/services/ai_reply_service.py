"""AI reply composition.

Builds the drafting prompt from the operator knowledge base, optional order
context from the commerce provider, and the customer's mail.
"""

from typing import Any

from supportdesk.services.commerce_api import parse_provider_datetime

SYSTEM_PROMPT = (
    "Sen bir e-ticaret mağazasının yardımsever ve profesyonel müşteri hizmetleri "
    "asistanısın. Yalnızca verilen bilgilere dayanarak Türkçe yanıt yaz; emin "
    "olmadığın konularda bilgi uydurma."
)

MAX_BODY_CHARS = 4000


def format_order_context(order: dict[str, Any]) -> str:
    """Render a provider order as plain lines for the prompt."""
    customer = order.get("customer") or {}
    name = " ".join(p for p in (customer.get("firstName"), customer.get("lastName")) if p)
    ordered_at = parse_provider_datetime(order.get("orderedAt"))

    lines = [f"Sipariş No: {order.get('orderNumber', '')}"]
    if order.get("status"):
        lines.append(f"Sipariş Durumu: {order['status']}")
    if order.get("orderPackageStatus"):
        lines.append(f"Paket Durumu: {order['orderPackageStatus']}")
    if ordered_at:
        lines.append(f"Sipariş Tarihi: {ordered_at.date().isoformat()}")
    if order.get("totalFinalPrice") is not None:
        lines.append(f"Toplam: {order['totalFinalPrice']} {order.get('currencyCode') or ''}".rstrip())
    if name:
        lines.append(f"Müşteri: {name}")

    for item in order.get("orderLineItems") or []:
        variant = (item.get("variant") or {}).get("name") or "Ürün"
        lines.append(f"- {variant} x{item.get('quantity', 1)}")

    for package in order.get("orderPackages") or []:
        tracking = package.get("trackingInfo") or {}
        if tracking.get("trackingNumber"):
            carrier = tracking.get("cargoCompany") or "Kargo"
            lines.append(f"Kargo: {carrier} / Takip No: {tracking['trackingNumber']}")
            if tracking.get("trackingLink"):
                lines.append(f"Takip Linki: {tracking['trackingLink']}")
        if package.get("orderPackageFulfillStatus"):
            lines.append(f"Gönderim Durumu: {package['orderPackageFulfillStatus']}")

    return "\n".join(lines)


def build_reply_prompt(
    *,
    from_email: str,
    subject: str,
    body: str,
    category: str | None,
    knowledge_base: list[tuple[str, str]],
    order: dict[str, Any] | None = None,
) -> str:
    sections = []
    if knowledge_base:
        kb = "\n\n".join(f"## {title}\n{content}" for title, content in knowledge_base)
        sections.append(f"# Mağaza Bilgi Bankası\n{kb}")
    if order:
        sections.append(f"# Sipariş Bilgileri\n{format_order_context(order)}")
    else:
        sections.append("# Sipariş Bilgileri\nSipariş bilgisi bulunamadı.")

    sections.append(
        "# Müşteri Maili\n"
        f"Gönderen: {from_email}\n"
        f"Konu: {subject}\n"
        f"Kategori: {category or 'Belirsiz'}\n\n"
        f"{body[:MAX_BODY_CHARS]}"
    )
    sections.append(
        "Müşteriye gönderilecek samimi, çözüm odaklı bir yanıt taslağı hazırla. "
        "Yalnızca mail metnini yaz."
    )
    return "\n\n".join(sections)

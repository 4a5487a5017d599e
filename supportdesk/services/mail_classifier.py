"""Mail classification and order-number extraction.

Both are pure functions over subject + body text. Classification walks an
ordered rule table; the first rule with a matching keyword wins and the last
rule matches everything.
"""

from __future__ import annotations

import re

from supportdesk.db.enums import MailCategory


# =============================================================================
# Order numbers
# =============================================================================

# Tried in order; the first pattern that matches wins.
ORDER_NUMBER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(\d{4,})\s*numaralı\s*sipariş", re.IGNORECASE),
    re.compile(r"sipariş\s*(?:no|numarası)?\s*:?\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"(\d{4,})\s*(?:nolu|numaralı)\s*order", re.IGNORECASE),
    re.compile(r"order\s*(?:no|number)?\s*:?\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"#(\d{4,})"),
    # Bare digits, but not part of a date, time, decimal or phone-like run
    re.compile(r"(?<![\d./:,+-])(\d{4,})(?![\d./:,-])"),
)


def extract_order_number(text: str | None) -> str | None:
    """Return the first order number found in text, or None."""
    if not text:
        return None
    for pattern in ORDER_NUMBER_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


# =============================================================================
# Categories
# =============================================================================

CLASSIFICATION_RULES: tuple[tuple[MailCategory, tuple[str, ...]], ...] = (
    (
        MailCategory.COMPLAINT,
        ("şikayet", "şikâyet", "rezalet", "berbat", "memnun değilim", "kabul edilemez", "complaint"),
    ),
    (
        MailCategory.RETURN_REQUEST,
        ("iade", "geri göndermek", "değişim", "değiştirmek", "return", "refund"),
    ),
    (
        MailCategory.PAYMENT_ISSUE,
        ("ödeme", "fatura", "kredi kartı", "taksit", "çekildi", "payment", "invoice"),
    ),
    (
        MailCategory.SHIPPING_INQUIRY,
        ("kargo", "teslimat", "takip numarası", "gönderim", "shipping", "tracking", "delivery"),
    ),
    (
        MailCategory.ORDER_INQUIRY,
        ("sipariş", "siparis", "order"),
    ),
    (
        MailCategory.PRODUCT_QUESTION,
        ("ürün", "beden", "stok", "renk", "product", "size"),
    ),
    (MailCategory.GENERAL, ()),
)

# Keywords match at word starts, so "iade" does not fire inside "ziyade"
_RULE_PATTERNS: tuple[tuple[MailCategory, re.Pattern[str] | None], ...] = tuple(
    (category, re.compile(r"\b(?:" + "|".join(map(re.escape, keywords)) + ")") if keywords else None)
    for category, keywords in CLASSIFICATION_RULES
)


def _normalize(text: str) -> str:
    # "İ".casefold() yields "i̇" (two code points)
    return text.replace("İ", "i").casefold()


def classify_mail(subject: str | None, body: str | None) -> MailCategory:
    """Category of the first rule with a keyword starting a word in subject or body."""
    haystack = _normalize(f"{subject or ''} {body or ''}")
    for category, pattern in _RULE_PATTERNS:
        if pattern is None or pattern.search(haystack):
            return category
    return MailCategory.GENERAL


ORDER_RELATED_CATEGORIES = frozenset({MailCategory.ORDER_INQUIRY, MailCategory.SHIPPING_INQUIRY})


def is_order_related(category: MailCategory, order_number: str | None) -> bool:
    return category in ORDER_RELATED_CATEGORIES or order_number is not None

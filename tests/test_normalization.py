import pytest

from supportdesk.utils.normalization import normalize_email, normalize_name, normalize_phone


@pytest.mark.parametrize(
    "raw",
    ["5321234567", "05321234567", "905321234567", "+90 532 123 45 67", "(0532) 123-4567"],
)
def test_normalize_phone(raw):
    assert normalize_phone(raw) == "+905321234567"


def test_normalize_phone_empty():
    assert normalize_phone(None) is None
    assert normalize_phone("  ") is None


def test_normalize_phone_invalid():
    with pytest.raises(ValueError):
        normalize_phone("12345")


def test_normalize_email():
    assert normalize_email("  Ayse.Yilmaz@Example.COM ") == "ayse.yilmaz@example.com"
    assert normalize_email("") is None


def test_normalize_name():
    assert normalize_name("  Ayşe   Nur  ") == "Ayşe Nur"

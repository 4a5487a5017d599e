"""Operator settings storage, including encrypted provider secrets."""

from supportdesk.core.encryption import decrypt_token
from supportdesk.db.models import AppSetting
from supportdesk.services import settings_service


def test_secret_settings_are_encrypted_at_rest(db):
    settings_service.set_setting(db, settings_service.OPENAI_API_KEY, "sk-live-123")
    settings_service.set_setting(db, settings_service.IKAS_CLIENT_SECRET, "ikas-secret")

    stored = db.get(AppSetting, settings_service.OPENAI_API_KEY).value
    assert stored != "sk-live-123"
    assert "sk-live" not in stored
    assert decrypt_token(stored) == "sk-live-123"

    assert settings_service.get_setting(db, settings_service.OPENAI_API_KEY) == "sk-live-123"
    assert settings_service.get_ikas_credentials(db)[1] == "ikas-secret"


def test_plain_settings_are_stored_as_is(db):
    settings_service.set_setting(db, settings_service.OPENAI_MODEL, "gpt-4o")

    assert db.get(AppSetting, settings_service.OPENAI_MODEL).value == "gpt-4o"
    assert settings_service.get_ai_config(db)[1] == "gpt-4o"


def test_imap_password_roundtrip(db):
    settings_service.set_setting(db, settings_service.IMAP_HOST, "imap.example.com")
    settings_service.set_setting(db, settings_service.IMAP_USER, "destek@magaza.com")
    settings_service.set_setting(db, settings_service.IMAP_PASSWORD, "app-password")

    config = settings_service.get_imap_settings(db)

    assert config.password == "app-password"
    assert config.is_configured
    assert db.get(AppSetting, settings_service.IMAP_PASSWORD).value != "app-password"


def test_undecryptable_secret_is_treated_as_unset(db):
    db.add(AppSetting(key=settings_service.OPENAI_API_KEY, value="written-before-encryption"))
    db.commit()

    assert settings_service.get_setting(db, settings_service.OPENAI_API_KEY, default="none") == "none"
    assert settings_service.get_settings_map(db)[settings_service.OPENAI_API_KEY] == ""


def test_clearing_a_secret(db):
    settings_service.set_setting(db, settings_service.OPENAI_API_KEY, "sk-live-123")
    settings_service.set_setting(db, settings_service.OPENAI_API_KEY, "")

    assert db.get(AppSetting, settings_service.OPENAI_API_KEY).value == ""
    assert settings_service.get_setting(db, settings_service.OPENAI_API_KEY) == ""

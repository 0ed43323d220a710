import pytest
from pydantic import ValidationError

from usersync.core.config import Settings


def test_blank_secrets_count_as_unset() -> None:
    settings = Settings(clerk_webhook_secret="   ", processor_api_key_hash="", supabase_url=" ")

    assert settings.clerk_webhook_secret is None
    assert settings.processor_api_key_hash is None
    assert settings.supabase_url is None


def test_key_hash_is_normalised_for_comparison() -> None:
    assert Settings(processor_api_key_hash="  ABCDEF01 ").processor_api_key_hash == "abcdef01"


def test_env_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("US_JOB_MAX_RETRIES", "5")
    monkeypatch.setenv("US_CLERK_WEBHOOK_SECRET", "whsec_abc")

    settings = Settings()

    assert settings.job_max_retries == 5
    assert settings.clerk_webhook_secret == "whsec_abc"


def test_negative_retry_ceiling_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(job_max_retries=-1)

from dataclasses import fields

from dataflood.config import get_settings


def test_data_gov_key_is_a_fallback_for_the_sam_key(monkeypatch) -> None:
    monkeypatch.setenv("SAM_API_KEY", "")
    monkeypatch.setenv("DATA_GOV_KEY", "gov-key")

    settings = get_settings()

    assert settings.sam_api_key == "gov-key"
    assert "data_gov_key" not in {field.name for field in fields(settings)}


def test_sam_key_wins_over_data_gov_key(monkeypatch) -> None:
    monkeypatch.setenv("SAM_API_KEY", "sam-key")
    monkeypatch.setenv("DATA_GOV_KEY", "gov-key")

    assert get_settings().sam_api_key == "sam-key"

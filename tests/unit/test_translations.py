"""Test language resolution and localized strings."""

import pytest

from roast_api.translations import (
    SUPPORTED_LANGUAGES,
    TRANSLATIONS,
    error_message,
    fallback_text,
    resolve_language,
    system_prompt,
)


@pytest.mark.parametrize(
    ("query_lang", "accept_language", "expected"),
    [
        ("pt-BR", None, "pt-BR"),
        ("en-US", "pt-BR,pt;q=0.9", "en-US"),
        (None, "pt-BR,pt;q=0.9", "pt-BR"),
        (None, "PT", "pt-BR"),
        ("fr-FR", "pt-PT", "pt-BR"),
        ("fr-FR", "fr-FR,fr;q=0.9", "en-US"),
        (None, None, "en-US"),
        (None, "", "en-US"),
    ],
)
def test_resolve_language(query_lang, accept_language, expected) -> None:
    assert resolve_language(query_lang, accept_language) == expected


def test_every_language_has_every_string() -> None:
    """Both languages define the same keys."""
    for language in SUPPORTED_LANGUAGES:
        strings = TRANSLATIONS[language]
        assert strings["system_prompt"]
        assert strings["fallback_text"]
        assert set(strings["errors"]) == set(TRANSLATIONS["en-US"]["errors"])


def test_prompt_demands_language() -> None:
    assert "English" in system_prompt("en-US")
    assert "português" in system_prompt("pt-BR")


def test_unknown_language_falls_back_to_english() -> None:
    assert fallback_text("de-DE") == fallback_text("en-US")
    assert error_message("de-DE", "user_not_found") == "GitHub user not found"


def test_error_message() -> None:
    assert error_message("pt-BR", "invalid_username") == "Nome de usuário do GitHub inválido"

"""Localized strings and language resolution."""

from typing import Literal

from typing_extensions import TypedDict

Language = Literal["en-US", "pt-BR"]

DEFAULT_LANGUAGE: Language = "en-US"
SUPPORTED_LANGUAGES: tuple[Language, ...] = ("en-US", "pt-BR")


class ErrorStrings(TypedDict):
    rate_limit_exceeded: str
    user_not_found: str
    username_required: str
    invalid_username: str
    request_failed: str


class TranslationStrings(TypedDict):
    system_prompt: str
    fallback_text: str
    errors: ErrorStrings


TRANSLATIONS: dict[str, TranslationStrings] = {
    "en-US": {
        "system_prompt": (
            "You are a sarcastic and humorous tech critic. Your job is to playfully roast "
            "someone's GitHub profile in a funny way. Keep it light-hearted, don't be actually "
            "mean or offensive. Select a few repositories to make fun of, and use the user's bio "
            "and other information to create a funny roast. Use a few emojis. "
            "IMPORTANT: Respond ONLY in English."
        ),
        "fallback_text": (
            "Hmm, I couldn't think of anything clever to say. "
            "This GitHub profile is too boring to roast."
        ),
        "errors": {
            "rate_limit_exceeded": "Rate limit exceeded. Try again later.",
            "user_not_found": "GitHub user not found",
            "username_required": "GitHub username is required",
            "invalid_username": "Invalid GitHub username",
            "request_failed": "Failed to process request",
        },
    },
    "pt-BR": {
        "system_prompt": (
            "Você é um crítico de tecnologia sarcástico e bem-humorado. Seu trabalho é zoar o "
            "perfil do GitHub de alguém de forma divertida. Mantenha um tom leve, não seja "
            "ofensivo de verdade. Selecione alguns repositórios para fazer piada, e use a bio do "
            "usuário e outras informações para criar uma zoação engraçada. Use alguns emojis na "
            "resposta. IMPORTANTE: Responda APENAS em português brasileiro."
        ),
        "fallback_text": (
            "Hmm, não consegui pensar em algo inteligente para dizer. "
            "Este perfil do GitHub é entediante demais para zoar."
        ),
        "errors": {
            "rate_limit_exceeded": "Limite de requisições excedido. Tente novamente mais tarde.",
            "user_not_found": "Usuário do GitHub não encontrado",
            "username_required": "Nome de usuário do GitHub é obrigatório",
            "invalid_username": "Nome de usuário do GitHub inválido",
            "request_failed": "Falha ao processar a requisição",
        },
    },
}


def resolve_language(query_lang: str | None, accept_language: str | None = None) -> Language:
    """Pick the response language.

    An explicit, supported ``lang`` query parameter wins. Otherwise any mention of
    Portuguese in the Accept-Language header selects pt-BR, and everything else
    falls back to en-US.
    """
    if query_lang == "pt-BR":
        return "pt-BR"
    if query_lang == "en-US":
        return "en-US"
    if accept_language and "pt" in accept_language.lower():
        return "pt-BR"
    return DEFAULT_LANGUAGE


def get_strings(language: str) -> TranslationStrings:
    return TRANSLATIONS.get(language, TRANSLATIONS[DEFAULT_LANGUAGE])


def system_prompt(language: str) -> str:
    return get_strings(language)["system_prompt"]


def fallback_text(language: str) -> str:
    return get_strings(language)["fallback_text"]


def error_message(language: str, key: str) -> str:
    return get_strings(language)["errors"][key]  # type: ignore[literal-required]

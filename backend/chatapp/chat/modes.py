import logging
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    CHAT = "chat"
    CODE = "code"
    TRANSLATE = "translate"
    SUMMARIZE = "summarize"


# Older clients send "normal" for plain chat
MODE_ALIASES = {"normal": Mode.CHAT}

LANGUAGES = {
    "spanish": "Spanish",
    "french": "French",
    "german": "German",
    "italian": "Italian",
    "portuguese": "Portuguese",
    "russian": "Russian",
    "japanese": "Japanese",
    "korean": "Korean",
    "chinese": "Chinese",
    "arabic": "Arabic",
    "hindi": "Hindi",
    "english": "English",
}


def parse_mode(value: Optional[str]) -> Mode:
    key = (value or "").strip().lower()
    if key in MODE_ALIASES:
        return MODE_ALIASES[key]
    try:
        return Mode(key)
    except ValueError:
        logger.info(f"Unknown aiMode {value!r}, using chat")
        return Mode.CHAT


def language_label(value: Optional[str]) -> str:
    if not value:
        return LANGUAGES["english"]
    return LANGUAGES.get(value.strip().lower(), value.strip())


def _chat(_language: Optional[str]) -> str:
    return (
        "You are a helpful AI assistant. Provide clear, accurate, and helpful "
        "responses to user questions."
    )


def _code(_language: Optional[str]) -> str:
    return (
        "You are an expert software engineer. Answer programming questions with "
        "correct, idiomatic code in fenced code blocks, name the language, and "
        "keep explanations short and to the point."
    )


def _translate(language: Optional[str]) -> str:
    target = language_label(language)
    # Nothing to translate into: answer as plain chat, in English
    if target == LANGUAGES["english"]:
        return (
            "You are a helpful AI assistant. Provide clear, accurate, and helpful "
            "responses to user questions in English."
        )
    return (
        f"You are a helpful AI assistant. Translate the user's input to {target}. "
        "Respond ONLY with the translation, no explanations or additional text."
    )


def _summarize(_language: Optional[str]) -> str:
    return (
        "You are a helpful AI assistant. Summarize the user's input clearly and "
        "concisely. Keep the key facts, drop filler, and use bullet points when "
        "the input covers several topics."
    )


INSTRUCTIONS: dict[Mode, Callable[[Optional[str]], str]] = {
    Mode.CHAT: _chat,
    Mode.CODE: _code,
    Mode.TRANSLATE: _translate,
    Mode.SUMMARIZE: _summarize,
}


def system_instruction(mode: Mode, language: Optional[str] = None) -> str:
    return INSTRUCTIONS[mode](language)

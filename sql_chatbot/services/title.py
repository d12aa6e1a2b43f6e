import logging
import re
from functools import cache
from typing import Any, List

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from sql_chatbot.models.chat import DEFAULT_TITLE
from sql_chatbot.settings import config

logger = logging.getLogger(__name__)

MAX_TITLE_WORDS = 4
MIN_TITLE_WORDS = 3

TITLE_INSTRUCTION = (
    "Generate a short, descriptive title of 3 to 4 words for this conversation. "
    "Reply with the title only, without quotes or punctuation."
)


@cache
def get_title_model() -> ChatGoogleGenerativeAI:
    return ChatGoogleGenerativeAI(
        model=config.title_model,
        google_api_key=config.gemini_api_key,
        temperature=0.3,
    )


def _strip_punctuation(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    return "".join(ch for ch in text if ch.isalnum() or ch.isspace())


def _words(text: str) -> List[str]:
    return _strip_punctuation(text).split()


def clean_title(raw_title: str, user_text: str) -> str:
    words = _words(raw_title)
    if not words:
        return DEFAULT_TITLE

    words = words[:MAX_TITLE_WORDS]
    if len(words) < MIN_TITLE_WORDS:
        missing = MAX_TITLE_WORDS - len(words)
        words.extend(_words(user_text)[:missing])

    title = " ".join(words)
    return title or DEFAULT_TITLE


def _response_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return " ".join(parts)


async def generate_title(user_text: str, assistant_text: str, llm=None) -> str:
    """
    Derive a conversation title from its first exchange.

    Never raises: any failure talking to the model yields the default title.
    """
    try:
        model = llm or get_title_model()
        response = await model.ainvoke(
            [
                SystemMessage(content=TITLE_INSTRUCTION),
                HumanMessage(
                    content=f"User: {user_text[:500]}\n\nAssistant: {assistant_text[:500]}"
                ),
            ]
        )
        return clean_title(_response_text(response.content), user_text)
    except Exception as e:
        logger.error(f"Title generation failed: {e}", exc_info=True)
        return DEFAULT_TITLE

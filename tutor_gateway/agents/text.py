from __future__ import annotations

import re
from typing import Dict, List

MAX_INPUT_CHARS = 4000

_WHITESPACE = re.compile(r"\s+")
_CODE_BLOCK = re.compile(r"```(\w*)\n(.*?)```", re.DOTALL)
_INLINE_MATH = re.compile(r"(?<!\$)\$([^$\n]+)\$(?!\$)")
_BLOCK_MATH = re.compile(r"\$\$(.+?)\$\$", re.DOTALL)
_ARABIC = re.compile(r"[؀-ۿ]")


def sanitize_input(text: str, max_chars: int = MAX_INPUT_CHARS) -> str:
    """Trim, collapse whitespace runs and hard-truncate."""
    return _WHITESPACE.sub(" ", text.strip())[:max_chars]


def truncate(text: str, max_chars: int, suffix: str = "...") -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - len(suffix))] + suffix


def extract_code_blocks(text: str) -> List[Dict[str, str]]:
    return [
        {"language": lang or "text", "code": code.strip()}
        for lang, code in _CODE_BLOCK.findall(text)
    ]


def extract_equations(text: str) -> List[str]:
    block = [m.strip() for m in _BLOCK_MATH.findall(text)]
    inline = [m.strip() for m in _INLINE_MATH.findall(_BLOCK_MATH.sub(" ", text))]
    return block + inline


def is_arabic_text(text: str, threshold: float = 0.3) -> bool:
    letters = [c for c in text if c.isalpha()]
    if not letters:
        return False
    arabic = sum(1 for c in letters if _ARABIC.match(c))
    return arabic / len(letters) >= threshold

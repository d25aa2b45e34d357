from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s\-()]")


def normalize_phone(raw: str | None, country_prefix: str = "62") -> str:
    """Turn free-text phone input into a canonical messaging address.

    Returns a digit string starting with ``country_prefix`` or ``""`` when the
    input cannot be normalized (callers must then skip sending).
    """
    number = _SEPARATORS.sub("", (raw or "").strip())
    if number.startswith("+"):
        rest = number[1:]
        number = rest if rest.startswith(country_prefix) else country_prefix + rest
    elif number.startswith("0"):
        number = country_prefix + number[1:]
    elif not number.startswith(country_prefix):
        logger.debug("Phone number %r has no recognizable prefix", raw)
        return ""

    if not (number.isascii() and number.isdigit()) or len(number) <= len(country_prefix):
        logger.debug("Phone number %r is not a valid address after normalization", raw)
        return ""
    return number

import re


EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")

MAX_PREVIEW_LENGTH = 150
ELLIPSIS = "..."


def strip_pii(text: str) -> str:
    """Replace emails and phone numbers with placeholders"""
    text = EMAIL_PATTERN.sub("[EMAIL]", text)
    return PHONE_PATTERN.sub("[PHONE]", text)


def redact_preview(text: str, max_length: int = MAX_PREVIEW_LENGTH) -> str:
    """Strip PII from the full text, then cut to at most max_length characters.

    The result never holds a partial address or number, and the ellipsis
    counts toward max_length.
    """
    if not text:
        return ""
    cleaned = strip_pii(text)
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[:max_length - len(ELLIPSIS)] + ELLIPSIS

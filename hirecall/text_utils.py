import re

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def strip_json_fence(raw: str) -> str:
    """Return raw text with optional ```json fences removed."""
    text = (raw or "").strip()
    match = _JSON_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def name_from_email(email: str | None, name: str | None) -> str:
    """
    Return ``name`` when usable, otherwise derive a display name from the
    local part of ``email`` ("jane.doe42@x.com" → "Jane Doe").
    """
    cleaned = (name or "").strip()
    if cleaned and cleaned.lower() != "not available":
        return cleaned
    if not email or "@" not in email:
        return cleaned or "Not available"
    local = email.split("@", 1)[0]
    words = [w for w in re.split(r"[._\-+]+", re.sub(r"\d+", "", local)) if w]
    if not words:
        return cleaned or "Not available"
    return " ".join(w.capitalize() for w in words)


def split_skills(raw: str | list | None) -> list[str]:
    """Split a comma/semicolon/newline separated skills string into lowercase tokens."""
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        items = raw
    else:
        items = re.split(r"[,;\n|]+", raw)
    return [str(item).strip().lower() for item in items if str(item).strip()]

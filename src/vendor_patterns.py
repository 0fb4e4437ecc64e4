import re

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def extract_vendor_pattern(description: str) -> str:
    """Canonical vendor key: first 3 lowercase alphanumeric tokens of length >= 2.

    "A B CD Big Company" -> "cd big company"
    """
    if not description:
        return ""
    s = _NON_ALNUM.sub("", description.lower())
    tokens = [t for t in s.split() if len(t) >= 2]
    return " ".join(tokens[:3]).strip()

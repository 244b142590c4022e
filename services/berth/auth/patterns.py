"""Stack-name glob matching.

Only '*' is a wildcard. Stack names routinely contain '.', so no other
metacharacters are recognised. Comparison is case-insensitive.
"""


def matches(text: str, pattern: str) -> bool:
    """Return True if text matches the '*'-glob pattern.

    >>> matches("prod-web-us-east", "prod-*-us-*")
    True
    >>> matches("dev-web-us-east", "prod-*-us-*")
    False
    """
    if pattern == "*":
        return True

    text = text.lower()
    pattern = pattern.lower()

    if "*" not in pattern:
        return text == pattern

    parts = pattern.split("*")
    first, last = parts[0], parts[-1]

    if not text.startswith(first):
        return False

    pos = len(first)
    for segment in parts[1:-1]:
        if not segment:
            continue
        idx = text.find(segment, pos)
        if idx < 0:
            return False
        pos = idx + len(segment)

    # The suffix must not overlap anything already consumed.
    if last:
        return len(text) - len(last) >= pos and text.endswith(last)
    return True

import re

SCRIPT_BLOCK = re.compile(r"<\s*script[^>]*>[\s\S]*?<\s*/\s*script\s*>", re.IGNORECASE)
HANDLER_DOUBLE = re.compile(r'on[a-z]+\s*=\s*"[^"]*"', re.IGNORECASE)
HANDLER_SINGLE = re.compile(r"on[a-z]+\s*=\s*'[^']*'", re.IGNORECASE)
JS_URI = re.compile(r"javascript:\s*", re.IGNORECASE)
ANGLE_BRACKETS = re.compile(r"[<>]")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")


def sanitize_text(value, max_len=500):
    """
    Strips script blocks, inline handlers, javascript: URIs, angle brackets
    and control characters from free text, then truncates to max_len.
    Non-string input becomes ''.
    """
    if not isinstance(value, str):
        return ""
    s = value.strip()
    s = SCRIPT_BLOCK.sub("", s)
    s = HANDLER_DOUBLE.sub("", s)
    s = HANDLER_SINGLE.sub("", s)
    s = JS_URI.sub("", s)
    s = ANGLE_BRACKETS.sub("", s)
    s = CONTROL_CHARS.sub("", s)
    return s[:max_len]

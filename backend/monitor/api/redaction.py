"""Pattern-based redaction of credentials and personal data in logged traffic."""

import re

REDACTED = "###REDACTED###"


def _json_field(name: str) -> re.Pattern[str]:
    return re.compile(rf'(?i)("{name}"\s*:\s*")[^"]*(")')


def _query_field(name: str) -> re.Pattern[str]:
    return re.compile(rf"(?i)({name}=)[^&;\s]*")


_JSON_FIELDS = (
    "password",
    "auth(?:Token|Cookie)?",
    "session(?:Token|Id)?",
    "api[_-]?key",
    "twoFactorAuth(?:Token|Cookie)?",
    "code",
    "username",
    "email",
    "private",
    "secret",
    "key",
    "token",
    "currentAvatarImageUrl",
    "currentAvatarThumbnailImageUrl",
    "userIcon",
    "profilePicOverride",
    "fallbackAvatar",
    "imageUrl",
    "thumbnailImageUrl",
    "url",
)

_QUERY_FIELDS = (
    "password",
    "auth(?:Token|Cookie)?",
    "session(?:Token|Id)?",
    "api[_-]?key",
    "twoFactorAuth(?:Token|Cookie)?",
)

# Patterns with two groups keep the closing delimiter; one-group patterns
# replace everything after the prefix.
SENSITIVE_PATTERNS: tuple[re.Pattern[str], ...] = (
    *(_json_field(name) for name in _JSON_FIELDS),
    *(_query_field(name) for name in _QUERY_FIELDS),
    re.compile(r"(?i)(auth:\s*)[^\s,}]*"),
    re.compile(r"(?i)(Basic\s+)[A-Za-z0-9+/=]+"),
    re.compile(r"(?i)(Bearer\s+)[A-Za-z0-9_.-]+"),
    re.compile(r"(?i)((?<![\w-])Cookie:\s*)[^\n]*"),
    re.compile(r"(?i)(Set-Cookie:\s*)[^\n]*"),
    re.compile(r'(?i)("tags"\s*:\s*\[)[^\]]*?(\])'),
)


def redact(text: str) -> str:
    """Replace every sensitive value in ``text`` with a fixed marker."""
    for pattern in SENSITIVE_PATTERNS:
        if pattern.groups >= 2:
            text = pattern.sub(rf"\g<1>{REDACTED}\g<2>", text)
        else:
            text = pattern.sub(rf"\g<1>{REDACTED}", text)
    return text

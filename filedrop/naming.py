import re
import unicodedata
from typing import Any, Tuple
from urllib.parse import quote

MAX_BASENAME_LENGTH = 200
DEFAULT_BASENAME = "unnamed_file"
FALLBACK_BASENAME = "file"
FALLBACK_EXTENSION = ".txt"

RESERVED_DEVICE_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{index}" for index in range(1, 10)]
    + [f"LPT{index}" for index in range(1, 10)]
)

_WHITESPACE_PATTERN = re.compile(r"\s+")
_SEPARATOR_PATTERN = re.compile(r"[+\-\s]+")
_RESERVED_CHAR_PATTERN = re.compile(r'[<>:"/\\|?*]')
_SHELL_CHAR_PATTERN = re.compile(r"[`'$;&(){}\[\]~#%]")
_DISALLOWED_CHAR_PATTERN = re.compile(r"[^A-Za-z0-9._-]")
_REPEATED_UNDERSCORE_PATTERN = re.compile(r"_{2,}")
_EDGE_PUNCTUATION = "._-"
_EXTENSION_DISALLOWED_PATTERN = re.compile(r"[^A-Za-z0-9]")
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def split_extension(name: str) -> Tuple[str, str]:
    """Split *name* at its last dot.

    A leading dot does not start an extension, so ``.bashrc`` has none.
    """

    index = name.rfind(".")
    if index <= 0:
        return name, ""
    return name[:index], name[index:]


def _clean_base(base: str) -> str:
    decomposed = unicodedata.normalize("NFD", base)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    ascii_only = stripped.encode("ascii", "ignore").decode("ascii")

    cleaned = _WHITESPACE_PATTERN.sub("_", ascii_only)
    cleaned = _SEPARATOR_PATTERN.sub("_", cleaned)
    cleaned = _RESERVED_CHAR_PATTERN.sub("", cleaned)
    cleaned = _SHELL_CHAR_PATTERN.sub("", cleaned)
    cleaned = _DISALLOWED_CHAR_PATTERN.sub("", cleaned)
    cleaned = _REPEATED_UNDERSCORE_PATTERN.sub("_", cleaned)
    return cleaned.strip(_EDGE_PUNCTUATION)


def _clean_extension(extension: str) -> str:
    cleaned = _EXTENSION_DISALLOWED_PATTERN.sub("", extension).lower()
    return f".{cleaned}" if cleaned else ""


def has_usable_name(raw_name: str) -> bool:
    """Return True when the base of *raw_name* survives sanitization.

    Names made only of reserved, shell or non-ASCII characters would be
    replaced wholesale by a placeholder and are not usable as rename targets.
    """

    if not raw_name or not raw_name.strip():
        return False
    base, _ = split_extension(raw_name.strip())
    return bool(_clean_base(base))


def sanitize_filename(raw_name: str) -> str:
    """Turn an arbitrary user-supplied name into a portable filename.

    The result only contains ``[A-Za-z0-9._-]``, is never empty and
    ``sanitize_filename(sanitize_filename(x)) == sanitize_filename(x)``.
    Diacritics are dropped rather than transliterated, Windows device names
    get a ``_file`` suffix and the base is capped at 200 characters.
    """

    if not isinstance(raw_name, str) or not raw_name:
        return DEFAULT_BASENAME

    base, extension = split_extension(raw_name)
    clean_extension = _clean_extension(extension)

    if not base.strip():
        base = DEFAULT_BASENAME
    elif extension and not clean_extension and "." in base:
        # The dropped extension would otherwise be re-read from the base on
        # the next pass.
        return sanitize_filename(base)

    clean_base = _clean_base(base) or FALLBACK_BASENAME
    if clean_base.upper() in RESERVED_DEVICE_NAMES:
        clean_base = f"{clean_base}_file"
    if len(clean_base) > MAX_BASENAME_LENGTH:
        clean_base = clean_base[:MAX_BASENAME_LENGTH].rstrip(_EDGE_PUNCTUATION)

    final_name = clean_base + clean_extension
    if not final_name or final_name == clean_extension:
        return FALLBACK_BASENAME + (clean_extension or FALLBACK_EXTENSION)
    return final_name


def sanitize_path(raw_path: str) -> str:
    """Sanitize every segment of a slash-separated path.

    Empty segments and the navigation tokens ``.`` and ``..`` are dropped
    before sanitizing, so the result can never climb out of its parent.
    """

    if not isinstance(raw_path, str) or not raw_path:
        return DEFAULT_BASENAME + FALLBACK_EXTENSION

    segments = [
        sanitize_filename(segment)
        for segment in raw_path.split("/")
        if segment and segment not in {".", ".."}
    ]
    if not segments:
        return DEFAULT_BASENAME + FALLBACK_EXTENSION
    return "/".join(segments)


def content_disposition(filename: str, disposition: str = "attachment") -> str:
    """Build a Content-Disposition value that is safe for any stored name.

    The quoted ``filename`` is an ASCII fallback with control characters
    replaced and quotes/backslashes escaped; non-ASCII names also get an
    RFC 5987 ``filename*`` parameter.
    """

    fallback = "".join(ch if 0x20 <= ord(ch) < 0x7F else "_" for ch in filename)
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    value = f'{disposition}; filename="{fallback}"'
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        value += f"; filename*=UTF-8''{quote(filename, safe='', errors='surrogateescape')}"
    return value

"""
Best-effort conversion of raw directory attribute values into typed fields.

Raw records are plain dictionaries produced by either backend. Attribute
names are matched case-insensitively because the LDAP backend and the
scripted backend disagree on casing (``distinguishedName`` vs
``DistinguishedName``). Nothing in this module raises on bad data: a value
that cannot be converted becomes the caller's default.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import dateutil.parser
from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import escape_rdn, parse_dn

logger = logging.getLogger(__name__)

# FILETIME: 100-nanosecond ticks since 1601-01-01 UTC
FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
FILETIME_NEVER = 0x7FFFFFFFFFFFFFFF

# userAccountControl / msDS-User-Account-Control-Computed bits
UF_ACCOUNTDISABLE = 0x0002
UF_LOCKOUT = 0x0010

NEVER_LABEL = "Never"

Record = Dict[str, Any]


def read_raw(record: Optional[Record], attr_name: str) -> Any:
    """Return the raw value stored under attr_name, ignoring case, or None."""
    if not record:
        return None
    if attr_name in record:
        return record[attr_name]
    lowered = attr_name.lower()
    for key, value in record.items():
        if str(key).lower() == lowered:
            return value
    return None


def _to_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def read_multi_valued(record: Optional[Record], attr_name: str) -> List[str]:
    """
    Read a multi-valued attribute as a list of strings.

    Order is the backend's return order and duplicates are kept, matching
    what the directory actually holds.
    """
    raw = read_raw(record, attr_name)
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [_to_text(item) for item in raw if item is not None]
    if isinstance(raw, str) and raw == "":
        return []
    return [_to_text(raw)]


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no", ""):
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return bool(value)


def read_scalar(
    record: Optional[Record],
    attr_name: str,
    cast: Callable[[Any], Any] = str,
    default: Any = None,
) -> Any:
    """
    Read the first value of an attribute and convert it with cast.

    Args:
        record: Raw record dictionary
        attr_name: Attribute name (case-insensitive)
        cast: Conversion callable (str, int, bool, ...)
        default: Returned when the attribute is missing or conversion fails

    Returns:
        The converted value or default
    """
    raw = read_raw(record, attr_name)
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if raw is None:
        return default

    try:
        if cast is bool:
            return _coerce_bool(raw)
        if cast is str:
            return _to_text(raw)
        return cast(raw)
    except (ValueError, TypeError, OverflowError) as e:
        logger.debug(f"Could not convert attribute '{attr_name}' value {raw!r}: {e}")
        return default


def read_flags(record: Optional[Record], attr_name: str) -> int:
    """Read a bit-flag attribute; missing or malformed values read as 0."""
    return read_scalar(record, attr_name, cast=int, default=0)


def is_enabled(flags: Optional[int]) -> bool:
    """An account is enabled unless the ACCOUNTDISABLE bit is set; other bits are ignored."""
    return not (int(flags or 0) & UF_ACCOUNTDISABLE)


def is_locked(flags: Optional[int]) -> bool:
    return bool(int(flags or 0) & UF_LOCKOUT)


def _from_filetime(ticks: int) -> Optional[datetime]:
    if ticks <= 0 or ticks >= FILETIME_NEVER:
        return None
    try:
        return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)
    except OverflowError:
        return None


def read_timestamp(raw_value: Any) -> Optional[datetime]:
    """
    Convert a raw directory timestamp to an aware UTC datetime.

    Accepts FILETIME integers (or their string form), datetimes already
    decoded by the protocol library, ``/Date(ms)/`` strings and ISO strings.
    Zero, the maximum FILETIME value and their decoded forms (year 1601,
    year 9999) all mean "never" and return None.
    """
    if isinstance(raw_value, (list, tuple)):
        raw_value = raw_value[0] if raw_value else None
    if raw_value is None or isinstance(raw_value, bool):
        return None

    try:
        if isinstance(raw_value, datetime):
            if raw_value.tzinfo is None:
                raw_value = raw_value.replace(tzinfo=timezone.utc)
            if raw_value.year <= 1601 or raw_value.year >= 9999:
                return None
            return raw_value

        if isinstance(raw_value, int):
            return _from_filetime(raw_value)

        text = _to_text(raw_value).strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return _from_filetime(int(text))
        if text.startswith("/Date(") and text.endswith(")/"):
            millis = int(text[6:-2].split("+")[0].split("-")[0] or 0)
            if millis <= 0:
                return None
            return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)

        return read_timestamp(dateutil.parser.isoparse(text))
    except (ValueError, TypeError, OverflowError) as e:
        logger.debug(f"Unparseable timestamp {raw_value!r}: {e}")
        return None


def read_timestamp_attribute(record: Optional[Record], *attr_names: str) -> Optional[datetime]:
    """Return the first attribute among attr_names that decodes to a real timestamp."""
    for attr_name in attr_names:
        value = read_timestamp(read_raw(record, attr_name))
        if value is not None:
            return value
    return None


def format_timestamp(value: Optional[datetime], never_label: str = NEVER_LABEL) -> str:
    """Render a mapped timestamp for display; None renders as the 'never' label."""
    if value is None:
        return never_label
    return value.isoformat()


_ESCAPE_PATTERN = re.compile(r"\\(?:([0-9A-Fa-f]{2})|(.))", re.DOTALL)

# '#' after the first character of a value; AD leaves it unescaped but ldap3 rejects it
_INNER_HASH = re.compile(r"(?<![=\\])#")


def _parse_dn(distinguished_name: str) -> List[Tuple[str, str, str]]:
    """(type, escaped value, separator) triples, or [] for anything ldap3 cannot parse."""
    if not distinguished_name or not distinguished_name.strip():
        return []
    try:
        return parse_dn(_INNER_HASH.sub(r"\\#", distinguished_name), escape=False, strip=True)
    except LDAPInvalidDnError as e:
        logger.debug(f"Unparseable DN '{distinguished_name}': {e}")
        return []


def _unescape_value(value: str) -> str:
    """Undo RFC 4514 escaping; ``\\,`` and ``\\2C`` both become ``,``."""
    decoded = bytearray()
    position = 0
    for match in _ESCAPE_PATTERN.finditer(value):
        decoded += value[position:match.start()].encode("utf-8")
        if match.group(1):
            decoded.append(int(match.group(1), 16))
        else:
            decoded += match.group(2).encode("utf-8")
        position = match.end()
    decoded += value[position:].encode("utf-8")
    return decoded.decode("utf-8", errors="replace")


def split_dn(distinguished_name: str) -> List[str]:
    """Split a DN into RDN strings; escaped separators stay inside their RDN."""
    parts = []
    current = []
    for attr_type, attr_value, separator in _parse_dn(distinguished_name):
        current.append(f"{attr_type}={attr_value}")
        # '+' joins the attributes of a multi-valued RDN
        if separator != "+":
            parts.append("+".join(current))
            current = []
    if current:
        parts.append("+".join(current))
    return parts


def parent_dn(distinguished_name: str) -> Optional[str]:
    """Everything after the first RDN, or None for a top-level name."""
    parts = split_dn(distinguished_name)
    if len(parts) < 2:
        return None
    return ",".join(parts[1:])


def rdn_value(distinguished_name: str) -> str:
    """Value of the leading RDN with escapes removed (``OU=Sales\\, East`` -> ``Sales, East``)."""
    parsed = _parse_dn(distinguished_name)
    return _unescape_value(parsed[0][1]) if parsed else ""


def rdn_attribute(distinguished_name: str) -> str:
    """Attribute type of the leading RDN (``OU`` for ``OU=Sales,DC=corp``)."""
    parsed = _parse_dn(distinguished_name)
    return parsed[0][0] if parsed else ""


def ou_path(distinguished_name: str) -> str:
    """OU names from the root down to the object's container, joined with ' > '."""
    names = [
        _unescape_value(attr_value)
        for attr_type, attr_value, _ in _parse_dn(distinguished_name)
        if attr_type.upper() == "OU"
    ]
    return " > ".join(reversed(names))


def same_dn(first: Optional[str], second: Optional[str]) -> bool:
    """Case-insensitive DN comparison that ignores spacing around separators."""
    if not first or not second:
        return False
    first_parts = [part.lower() for part in split_dn(first)]
    return bool(first_parts) and first_parts == [part.lower() for part in split_dn(second)]


def build_dn(attribute: str, value: str, parent: str) -> str:
    """Join an escaped RDN onto a parent DN."""
    escaped = _INNER_HASH.sub(r"\\#", escape_rdn(value))
    return f"{attribute}={escaped},{parent}"

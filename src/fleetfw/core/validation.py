"""Input validation utilities.

Provides validation for:
- Host and zone identifiers
- Network notation (IPv4 addresses, CIDR ranges, address lists)
- Ports, port range lists and rule priorities

All validators return the validated value or raise ValidationError.
"""

import ipaddress
import re

from fleetfw.core.exceptions import ValidationError


# Keyword accepted by port, source and destination lists
ANY = "Any"

# Identifier pattern for hosts, vnets and zone names
IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
MAX_IDENTIFIER_LENGTH = 63

MIN_PORT = 1
MAX_PORT = 65535

# Priority 65535 is the implicit terminal rule of every rule list
MAX_USER_PRIORITY = 65534


def validate_identifier(value: str, identifier_type: str = "identifier") -> str:
    """Validate a host, network or zone identifier.

    Args:
        value: Identifier to validate
        identifier_type: Type description for error messages

    Returns:
        The validated identifier

    Raises:
        ValidationError: If validation fails
    """
    if not value:
        raise ValidationError(f"Empty {identifier_type}")

    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"{identifier_type.capitalize()} too long: {len(value)} characters",
            hint=f"Maximum length is {MAX_IDENTIFIER_LENGTH} characters",
        )

    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"Invalid {identifier_type}: '{value}'",
            hint="Use letters, digits, '.', '-' and '_' only",
        )

    return value


def validate_ipv4(value: str) -> str:
    """Validate a dotted-decimal IPv4 address.

    Raises:
        ValidationError: If the value is not an IPv4 address
    """
    value = value.strip()
    try:
        ipaddress.IPv4Address(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid IPv4 address: {value}",
            hint="Use format like 10.0.0.5",
            details=[str(e)],
        ) from e
    return value


def validate_cidr(value: str) -> str:
    """Validate an IPv4 address or CIDR range.

    Host bits are allowed; callers truncate them when deriving networks.

    Args:
        value: CIDR string to validate (e.g., "10.0.0.0/24" or "10.0.0.5")

    Returns:
        The validated CIDR string

    Raises:
        ValidationError: If validation fails
    """
    value = value.strip()

    _, slash, prefix = value.partition("/")
    if slash and not prefix.isdigit():
        raise ValidationError(
            f"Invalid CIDR notation: {value}",
            hint="Give the prefix as a length, e.g. 10.0.0.0/24, not as a netmask",
        )

    try:
        ipaddress.IPv4Network(value, strict=False)
    except ValueError as e:
        raise ValidationError(
            f"Invalid CIDR notation: {value}",
            hint="Use format like 10.0.0.0/24 or 192.168.1.1",
            details=[str(e)],
        ) from e

    return value


def validate_port(value: int) -> int:
    """Validate a port number.

    Raises:
        ValidationError: If port is out of valid range
    """
    if not MIN_PORT <= value <= MAX_PORT:
        raise ValidationError(
            f"Invalid port number: {value}",
            hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
        )
    return value


def validate_port_ranges(value: str) -> str:
    """Validate a destination port list.

    Accepted grammar: a comma list of "N", "N-M" and "Any" entries,
    e.g. "80,443,8080-8088".

    Raises:
        ValidationError: If any entry is malformed
    """
    value = value.strip()
    if value == ANY:
        return value

    for part in value.split(","):
        part = part.strip()
        if part == ANY:
            continue
        bounds = part.split("-")
        if len(bounds) > 2 or not all(b.strip().isdigit() for b in bounds):
            raise ValidationError(
                f"Invalid port range: '{part}'",
                hint="Use a single port (443), a range (8080-8088) or 'Any'",
            )
        low = validate_port(int(bounds[0]))
        high = validate_port(int(bounds[-1]))
        if low > high:
            raise ValidationError(
                f"Invalid port range: '{part}'",
                hint="The first port of a range must not exceed the last",
            )

    return value


def validate_address_list(value: str) -> str:
    """Validate a source/destination list: comma list of IP, CIDR and "Any"."""
    value = value.strip()
    for part in value.split(","):
        if part.strip() != ANY:
            validate_cidr(part)

    return value


def validate_priority(value: int) -> int:
    """Validate a user rule priority.

    Raises:
        ValidationError: If priority is outside 0..65534
    """
    if not 0 <= value <= MAX_USER_PRIORITY:
        raise ValidationError(
            f"Invalid rule priority: {value}",
            hint=f"Priority must be between 0 and {MAX_USER_PRIORITY} "
                 f"({MAX_USER_PRIORITY + 1} is reserved for the implicit rule)",
        )
    return value

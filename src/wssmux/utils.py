"""Validation helpers for operator input."""

import re

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

_PORT_LIST_PATTERN = re.compile(r"^[0-9,\s]+$")
_DOMAIN_LABEL_PATTERN = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if isinstance(port, bool) or not isinstance(port, int) or not (MIN_PORT <= port <= MAX_PORT):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def parse_port(value: str | int, port_name: str = "Port") -> int:
    """Parse a single port number from operator input."""
    if isinstance(value, int):
        validate_port(value, port_name)
        return value

    text = value.strip()
    if not text.isdigit():
        raise ValueError(f"Invalid {port_name.lower()}: {value!r}")

    port = int(text)
    validate_port(port, port_name)
    return port


def parse_port_list(value: str) -> list[int]:
    """Parse a comma-separated port list, keeping order and dropping repeats.

    Args:
        value: Text such as ``"8443,8080"``

    Returns:
        Ordered list of distinct ports

    Raises:
        ValueError: If the text is not a comma-separated list of valid ports
    """
    if not value or not _PORT_LIST_PATTERN.match(value):
        raise ValueError(f"Invalid port list format: {value!r}")

    ports: list[int] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        port = parse_port(item)
        if port not in ports:
            ports.append(port)

    if not ports:
        raise ValueError(f"Invalid port list format: {value!r}")
    return ports


def format_port_list(ports: list[int]) -> str:
    """Render ports the way they are stored on disk."""
    return ",".join(str(port) for port in ports)


def validate_domain(value: str) -> str:
    """Validate and normalize a DNS name.

    Raises:
        ValueError: If the value is not a plausible fully qualified name
    """
    domain = value.strip().lower().rstrip(".")
    if not domain or "." not in domain or len(domain) > 253:
        raise ValueError("Domain must be a valid domain name")

    for part in domain.split("."):
        if not _DOMAIN_LABEL_PATTERN.match(part):
            raise ValueError(f"Invalid domain part: {part}")
    return domain


import re
from typing import Any, Optional


def normalize_text(s: str) -> str:
    return " ".join(s.strip().lower().split())


def normalize_header(header: Any) -> str:
    if header is None:
        return ""
    return normalize_text(str(header))


def cell_text(value: Any) -> str:
    """Render a spreadsheet cell as stripped text. Empty cells become ''."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


_IPV4 = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
)


def is_valid_ipv4(address: str) -> bool:
    return bool(_IPV4.match(address))


def normalize_address(address: str) -> str:
    """Natural key for a host. Leading zeros in octets are dropped."""
    address = address.strip()
    if is_valid_ipv4(address):
        return ".".join(str(int(octet)) for octet in address.split("."))
    return address.lower()


def parse_port(value: Any, default: int = 22) -> Optional[int]:
    """
    Parse an SSH port cell.

    Returns the default for an empty cell and None when the value is not a
    whole number in 1..65535.
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return default
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        port = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        port = int(value)
    else:
        text = str(value).strip()
        if not text.isdigit():
            return None
        port = int(text)
    if port < 1 or port > 65535:
        return None
    return port

from typing import Any, Dict, List

from .normalize import is_valid_ipv4, parse_port

# Column headers as they appear in the upload template
IP_COLUMN = "IP Server"
USER_COLUMN = "SSH User"
PORT_COLUMN = "SSH Port"
PASSWORD_COLUMN = "SSH Password"
HOSTNAME_COLUMN = "Hostname"
OS_VERSION_COLUMN = "OS Version"

REQUIRED_COLUMNS = [IP_COLUMN, USER_COLUMN, PORT_COLUMN, PASSWORD_COLUMN]
OPTIONAL_COLUMNS = [HOSTNAME_COLUMN, OS_VERSION_COLUMN]

MISSING_FIELDS = "Missing required information"
INVALID_ADDRESS = "Invalid IP address"
INVALID_PORT = "Invalid SSH port"
DUPLICATE_ADDRESS = "Duplicate IP address"


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def validate_host_row(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages for one extracted row.
    Empty list means valid.

    Checks run in order and stop at the first failing class, so a row
    with several problems reports the most basic one.
    """
    for f in ("ip_address", "ssh_user", "ssh_password"):
        if not _is_non_empty_str(data.get(f)):
            return [MISSING_FIELDS]

    if not is_valid_ipv4(data["ip_address"].strip()):
        return [INVALID_ADDRESS]

    if parse_port(data.get("ssh_port")) is None:
        return [INVALID_PORT]

    return []

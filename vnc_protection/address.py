import ipaddress
import re

from vnc_protection.errors import ValidationError

# dotted quad, each octet 0-255, not part of a longer digit/dot run
RE_IP = re.compile(
    r"(?<![\d.])(?:(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)\.){3}"
    r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(?![\d.]*\d)"
)


def validate_address(value):
    """
    Validate an IPv4 host address and return its canonical form.

    Raises ValidationError for anything that is not a dotted quad with
    octets 0-255 (leading zeros are rejected).
    """
    if not isinstance(value, str):
        raise ValidationError(f"invalid IPv4 address: {value!r}")
    candidate = value.strip()
    if not RE_IP.fullmatch(candidate):
        raise ValidationError(f"invalid IPv4 address: {value!r}")
    try:
        return str(ipaddress.IPv4Address(candidate))
    except ipaddress.AddressValueError:
        raise ValidationError(f"invalid IPv4 address: {value!r}") from None


def find_addresses(text):
    found = []
    for match in RE_IP.finditer(text):
        try:
            found.append(validate_address(match.group(0)))
        except ValidationError:
            continue
    return found

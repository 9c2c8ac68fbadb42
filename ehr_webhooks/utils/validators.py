"""
Security validators for webhook endpoint registration.

This module provides validation functions that protect against:
- SSRF (Server-Side Request Forgery) via endpoint URLs
- Malformed event subscription lists

Usage:
    from ehr_webhooks.utils.validators import validate_url, validate_event_patterns
"""

import ipaddress
import socket
from typing import List, Optional, Set, Tuple
from urllib.parse import urlparse

# =============================================================================
# Constants
# =============================================================================

# Allowed URL schemes for webhook endpoints
ALLOWED_URL_SCHEMES: Set[str] = {"http", "https"}

MAX_URL_LENGTH = 2048

# Blocked hostnames for SSRF protection
BLOCKED_HOSTNAMES: Set[str] = {
    "localhost",
    "localhost.localdomain",
    "127.0.0.1",
    "0.0.0.0",
    "::1",
    "metadata.google.internal",
    "metadata.google",
    "169.254.169.254",  # AWS/GCP metadata endpoint
    "metadata",
    "instance-data",
}

# Private IP ranges (CIDR notation)
PRIVATE_IP_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
    ipaddress.ip_network("100.64.0.0/10"),  # Carrier-grade NAT
    ipaddress.ip_network("::1/128"),  # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),  # IPv6 private
    ipaddress.ip_network("fe80::/10"),  # IPv6 link-local
]

# Common internal service ports
BLOCKED_PORTS: Set[int] = {22, 23, 25, 3306, 5432, 6379, 27017, 11211}


# =============================================================================
# URL Validation (SSRF Protection)
# =============================================================================

def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is in a private/reserved range."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    if any(ip in network for network in PRIVATE_IP_RANGES):
        return True
    return (
        ip.is_private
        or ip.is_reserved
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_unspecified
    )


def _resolve_hostname(hostname: str) -> List[str]:
    """Resolve hostname to all of its IP addresses."""
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC)
    except (socket.gaierror, socket.herror, OSError, UnicodeError):
        return []
    return list(dict.fromkeys(info[4][0] for info in infos))


def validate_url(
    url: str,
    allow_private: bool = False,
    allowed_schemes: Optional[Set[str]] = None,
    resolve_dns: bool = True,
) -> Tuple[bool, str]:
    """
    Validate a webhook endpoint URL.

    This function checks:
    1. URL is non-empty, absolute and uses an allowed scheme
    2. Hostname is present and not in the blocklist
    3. Literal and resolved IPs are not in private/reserved ranges
    4. No embedded credentials or internal service ports

    Checks 2 to 4 are skipped when allow_private is True.

    Args:
        url: The URL to validate
        allow_private: Allow private and internal destinations
        allowed_schemes: Set of allowed URL schemes (default: http, https)
        resolve_dns: Whether to resolve DNS and check the addresses

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not url or not url.strip():
        return False, "URL cannot be empty"

    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        return False, f"URL exceeds maximum length of {MAX_URL_LENGTH} characters"

    schemes = allowed_schemes or ALLOWED_URL_SCHEMES

    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return False, "Invalid URL format"

    if not parsed.scheme:
        return False, "URL must include a scheme (http:// or https://)"

    if parsed.scheme.lower() not in schemes:
        return False, f"URL scheme must be one of: {', '.join(sorted(schemes))}"

    if not parsed.hostname:
        return False, "URL must include a hostname"

    if allow_private:
        return True, ""

    hostname = parsed.hostname.lower()

    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
        return False, f"Hostname '{hostname}' is not allowed"

    if "@" in parsed.netloc:
        return False, "URL contains suspicious authentication pattern"

    if port is not None and port in BLOCKED_PORTS:
        return False, f"Port {port} is not allowed"

    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        # Not an IP address, resolve the hostname
        if resolve_dns:
            for resolved_ip in _resolve_hostname(hostname):
                if _is_private_ip(resolved_ip):
                    return False, "Hostname resolves to private/internal IP address"
    else:
        if _is_private_ip(hostname):
            return False, "Private/internal IP addresses are not allowed"

    return True, ""


# =============================================================================
# Event Pattern Validation
# =============================================================================

def validate_event_patterns(events: Optional[List[str]]) -> List[str]:
    """
    Validate an endpoint's event subscription list.

    Each pattern must have exactly two non-empty "Type.action" segments,
    either of which may be "*".

    Args:
        events: Event patterns, e.g. ["Patient.*", "Encounter.create"]

    Returns:
        The distinct patterns with surrounding whitespace removed, in first-seen order

    Raises:
        ValueError: If the list is empty or a pattern is blank or malformed
    """
    if not events:
        raise ValueError("At least one event pattern is required")

    validated: List[str] = []
    for pattern in events:
        if not isinstance(pattern, str) or not pattern.strip():
            raise ValueError("Event patterns must be non-empty strings")
        pattern = pattern.strip()
        segments = pattern.split(".")
        if len(segments) != 2 or not all(segment.strip() for segment in segments):
            raise ValueError(
                f"Invalid event pattern '{pattern}': expected 'ResourceType.action', "
                "e.g. 'Patient.create' or 'Patient.*'"
            )
        if pattern not in validated:
            validated.append(pattern)
    return validated

"""Credential checks and the client address gate."""

from __future__ import annotations

import hmac
import ipaddress
from typing import Iterable, Optional, Union

import structlog

from simpledeploy.core.config import Settings
from simpledeploy.core.exceptions import AuthenticationError

logger = structlog.get_logger()

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _matches(supplied: Optional[str], expected: str) -> bool:
    return hmac.compare_digest((supplied or "").encode("utf-8"), expected.encode("utf-8"))


class Authenticator:
    """Validates the X-Username/X-Password/X-Token request headers.

    With nothing configured every request passes. Otherwise a request passes
    when it presents the configured username and password, or the token.
    """

    def __init__(self, username: str = "", password: str = "", token: str = ""):
        self.username = username
        self.password = password
        self.token = token

    @classmethod
    def from_settings(cls, settings: Settings) -> "Authenticator":
        return cls(settings.username, settings.password, settings.auth_token)

    @property
    def enabled(self) -> bool:
        return bool(self.username or self.password or self.token)

    def is_authenticated(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
    ) -> bool:
        if not self.enabled:
            return True
        # evaluate both so timing does not reveal which one was configured
        user_ok = _matches(username, self.username) & _matches(password, self.password)
        token_ok = _matches(token, self.token)
        if (self.username or self.password) and user_ok:
            return True
        return bool(self.token) and token_ok

    def require(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        if not self.is_authenticated(username, password, token):
            logger.error("Invalid credentials provided", username=username)
            raise AuthenticationError("Unauthorized! Invalid username, password, or token.", code="unauthorized")


def parse_address(value: Optional[str]) -> Optional[IPAddress]:
    """Parse a client address, comparing IPv4-mapped IPv6 as plain IPv4."""
    if not value:
        return None
    try:
        address = ipaddress.ip_address(value.strip().strip("[]"))
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def address_in_range(address: IPAddress, entry: str) -> bool:
    """Whether ``address`` falls in a single address, CIDR block or start-end range."""
    entry = entry.strip()
    try:
        if "-" in entry:
            start_text, end_text = entry.split("-", 1)
            start = parse_address(start_text)
            end = parse_address(end_text)
            if start is None or end is None:
                raise ValueError(f"invalid range '{entry}'")
            if start.version != address.version or end.version != address.version:
                return False
            return start <= address <= end
        if "/" in entry:
            network = ipaddress.ip_network(entry, strict=False)
            return network.version == address.version and address in network
        single = parse_address(entry)
        if single is None:
            raise ValueError(f"invalid address '{entry}'")
        return single == address
    except ValueError as exc:
        logger.warning("Ignoring invalid ip whitelist entry", entry=entry, error=str(exc))
        return False


def is_ip_allowed(host: Optional[str], ranges: Iterable[str]) -> bool:
    ranges = [entry for entry in ranges if entry.strip()]
    if not ranges:
        return True
    address = parse_address(host)
    if address is None:
        return False
    return any(address_in_range(address, entry) for entry in ranges)

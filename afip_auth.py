"""
AFIP Authentication Tickets (WSAA)

Every authenticated WSMTXCA call carries a token/sign pair issued by the
AFIP authentication service (WSAA) for a given service name. Tickets are
short lived (12 hours) and must be reused until they expire.

This module defines the ticket value type, the provider interface consumed
by the client, and a file-backed provider that reads the loginTicketResponse
XML documents WSAA returns (TA-<cuit>-<service>.xml).

Issuing a ticket (signing the login request with the company certificate)
is not done here: pass an ``issuer`` callable to TicketStore if tickets must
be renewed automatically.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Optional

from lxml import etree

logger = logging.getLogger(__name__)

# Service name the WSMTXCA tickets are issued for
WSMTXCA_SERVICE = "wsmtxca"


class AfipAuthError(Exception):
    """Raised when a valid authentication ticket cannot be obtained."""

    def __init__(self, message: str, service: str = ""):
        self.service = service
        super().__init__(message)


@dataclass(frozen=True)
class AuthTicket:
    """Token/sign pair issued by WSAA for one service."""
    token: str
    sign: str
    represented_tax_id: int       # CUIT the calls are made on behalf of
    expiry: datetime

    @property
    def is_expired(self) -> bool:
        """Check if the ticket can no longer be used."""
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expiry


class AuthProvider(ABC):
    """Source of authentication tickets, keyed by service name."""

    @abstractmethod
    def get_ticket(self, service: str) -> AuthTicket:
        """
        Return a usable ticket for ``service``.

        Raises:
            AfipAuthError: If no valid ticket can be produced
        """


# =============================================================================
# LOGIN TICKET RESPONSE XML
# =============================================================================

def parse_login_ticket(xml: bytes, represented_tax_id: int) -> AuthTicket:
    """
    Parse a WSAA loginTicketResponse document.

    Args:
        xml: Raw XML bytes as returned by loginCms
        represented_tax_id: CUIT the ticket is used for

    Returns:
        AuthTicket built from credentials/token, credentials/sign and
        header/expirationTime

    Raises:
        AfipAuthError: If the document is not a valid ticket
    """
    try:
        root = etree.fromstring(xml)
    except etree.XMLSyntaxError as e:
        raise AfipAuthError(f"Invalid login ticket XML: {e}") from e

    token = root.findtext("credentials/token")
    sign = root.findtext("credentials/sign")
    expiration = root.findtext("header/expirationTime")

    if not token or not sign or not expiration:
        raise AfipAuthError("Login ticket is missing token, sign or expirationTime")

    try:
        expiry = datetime.fromisoformat(expiration.strip())
    except ValueError as e:
        raise AfipAuthError(f"Invalid expirationTime in login ticket: {expiration}") from e

    return AuthTicket(
        token=token.strip(),
        sign=sign.strip(),
        represented_tax_id=int(represented_tax_id),
        expiry=expiry,
    )


def build_login_ticket(ticket: AuthTicket, service: str = WSMTXCA_SERVICE) -> bytes:
    """Serialize a ticket back into loginTicketResponse XML."""
    root = etree.Element("loginTicketResponse", version="1.0")

    header = etree.SubElement(root, "header")
    etree.SubElement(header, "destination").text = f"CUIT {ticket.represented_tax_id}"
    etree.SubElement(header, "service").text = service
    etree.SubElement(header, "expirationTime").text = ticket.expiry.isoformat()

    credentials = etree.SubElement(root, "credentials")
    etree.SubElement(credentials, "token").text = ticket.token
    etree.SubElement(credentials, "sign").text = ticket.sign

    return etree.tostring(
        root,
        xml_declaration=True,
        encoding="UTF-8",
        pretty_print=True
    )


# =============================================================================
# FILE-BACKED TICKET STORE
# =============================================================================

class TicketStore(AuthProvider):
    """
    Ticket provider reading WSAA responses from a folder.

    Tickets are looked up as ``TA-<cuit>-<service>.xml`` (with a
    ``-production`` suffix for the production environment) and kept in
    memory until they expire.

    Usage:
        store = TicketStore(cuit=20111111112, folder="/var/lib/afip/ta")
        ticket = store.get_ticket("wsmtxca")
    """

    def __init__(
        self,
        cuit: int,
        folder: str,
        production: bool = False,
        issuer: Optional[Callable[[str], bytes]] = None
    ):
        """
        Initialize the store.

        Args:
            cuit: CUIT the tickets represent
            folder: Directory holding TA-*.xml files
            production: Use production ticket files
            issuer: Optional callable returning fresh loginTicketResponse
                XML for a service name; called when no valid ticket exists
        """
        self.cuit = int(cuit)
        self.folder = Path(folder)
        self.production = production
        self.issuer = issuer
        self._cache: Dict[str, AuthTicket] = {}
        self._cache_lock = Lock()

        logger.info(f"TicketStore initialized for CUIT {self.cuit} at {self.folder}")

    def ticket_path(self, service: str) -> Path:
        suffix = "-production" if self.production else ""
        return self.folder / f"TA-{self.cuit}-{service}{suffix}.xml"

    def get_ticket(self, service: str) -> AuthTicket:
        with self._cache_lock:
            cached = self._cache.get(service)
            if cached and not cached.is_expired:
                return cached

            ticket = self._load(service)
            if ticket is None or ticket.is_expired:
                ticket = self._renew(service)

            self._cache[service] = ticket
            return ticket

    def _load(self, service: str) -> Optional[AuthTicket]:
        path = self.ticket_path(service)
        if not path.exists():
            logger.debug(f"No ticket file for {service}: {path}")
            return None

        ticket = parse_login_ticket(path.read_bytes(), self.cuit)
        if ticket.is_expired:
            logger.info(f"Ticket for {service} expired at {ticket.expiry.isoformat()}")
        return ticket

    def _renew(self, service: str) -> AuthTicket:
        if self.issuer is None:
            raise AfipAuthError(f"No valid ticket available for service: {service}", service)

        logger.info(f"Requesting new ticket for service: {service}")
        try:
            xml = self.issuer(service)
        except AfipAuthError:
            raise
        except Exception as e:
            raise AfipAuthError(f"Ticket issuance failed for {service}: {e}", service) from e

        ticket = parse_login_ticket(xml, self.cuit)
        if ticket.is_expired:
            raise AfipAuthError(f"Issued ticket for {service} is already expired", service)

        self.folder.mkdir(parents=True, exist_ok=True)
        self.ticket_path(service).write_bytes(xml)
        return ticket

    def invalidate_cache(self, service: Optional[str] = None) -> None:
        """Drop cached tickets, for one service or all of them."""
        with self._cache_lock:
            if service:
                self._cache.pop(service, None)
            else:
                self._cache.clear()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    store = TicketStore(
        cuit=int(os.getenv("AFIP_CUIT", "20111111112")),
        folder=os.getenv("AFIP_TA_FOLDER", "./ta"),
    )

    try:
        ticket = store.get_ticket(WSMTXCA_SERVICE)
        print(f"✓ Ticket valid until {ticket.expiry.isoformat()}")
    except AfipAuthError as e:
        print(f"✗ {e}")

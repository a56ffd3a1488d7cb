"""
Shared Ticket Storage for the WSMTXCA Client

Keeps WSAA tickets in Google Cloud Secret Manager so every worker that
bills for the same CUIT reuses one ticket instead of requesting its own
(WSAA refuses a new ticket while the previous one is still valid).

Secrets are JSON documents:
    {"token": "...", "sign": "...", "expiration_time": "2024-01-15T22:00:00-03:00"}

Requirements:
    pip install google-cloud-secret-manager
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager

from afip_auth import WSMTXCA_SERVICE, AfipAuthError, AuthProvider, AuthTicket

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class SecretManagerConfig:
    """Configuration for Secret Manager ticket storage."""
    project_id: str
    cache_ttl_seconds: int = 300  # 5 minutes cache
    enable_caching: bool = True
    secret_prefix: str = "afip-ta"

    # Format: projects/{project}/secrets/{prefix}-{cuit}-{service}/versions/latest

    def get_secret_id(self, cuit: int, service: str) -> str:
        """Secret ID (without version) for a CUIT and service."""
        return f"{self.secret_prefix}-{cuit}-{service}"

    def get_secret_name(self, cuit: int, service: str) -> str:
        """Full resource name of the latest secret version."""
        return f"projects/{self.project_id}/secrets/{self.get_secret_id(cuit, service)}/versions/latest"


@dataclass
class CachedTicket:
    """In-memory cached ticket with TTL."""
    ticket: AuthTicket
    fetched_at: datetime
    ttl_seconds: int

    @property
    def is_expired(self) -> bool:
        expiry = self.fetched_at + timedelta(seconds=self.ttl_seconds)
        return datetime.now() >= expiry or self.ticket.is_expired


# =============================================================================
# EXCEPTIONS
# =============================================================================

class TicketNotFoundError(AfipAuthError):
    """Raised when no ticket is stored for a CUIT and service."""
    pass


class TicketAccessError(AfipAuthError):
    """Raised when access to the secret is denied."""
    pass


class TicketParseError(AfipAuthError):
    """Raised when the stored ticket cannot be parsed."""
    pass


# =============================================================================
# SECRET MANAGER TICKET STORE
# =============================================================================

class SecretManagerTicketStore(AuthProvider):
    """
    Ticket provider backed by Google Cloud Secret Manager.

    Usage:
        config = SecretManagerConfig(project_id="my-gcp-project")
        store = SecretManagerTicketStore(config, cuit=20111111112)

        # After obtaining a ticket from WSAA
        store.store_ticket("wsmtxca", ticket)

        # Anywhere else
        billing = ElectronicBilling(ServiceClient(channel, RequestBuilder(store)))
    """

    def __init__(self, config: SecretManagerConfig, cuit: int):
        self.config = config
        self.cuit = int(cuit)
        self._client = secretmanager.SecretManagerServiceClient()
        self._cache: Dict[str, CachedTicket] = {}
        self._cache_lock = Lock()

        logger.info(f"SecretManagerTicketStore initialized for project: {config.project_id}")

    def get_ticket(self, service: str, bypass_cache: bool = False) -> AuthTicket:
        """
        Retrieve the ticket for a service.

        Raises:
            TicketNotFoundError: If no ticket is stored
            TicketAccessError: If access is denied
            TicketParseError: If the stored data is invalid
            AfipAuthError: If the stored ticket has expired
        """
        if self.config.enable_caching and not bypass_cache:
            cached = self._get_from_cache(service)
            if cached:
                logger.debug(f"Cache hit for ticket: {service}")
                return cached

        logger.info(f"Fetching ticket from Secret Manager for service: {service}")
        ticket = self._fetch_from_secret_manager(service)

        if ticket.is_expired:
            raise AfipAuthError(f"Stored ticket for {service} expired at {ticket.expiry.isoformat()}", service)

        if self.config.enable_caching:
            with self._cache_lock:
                self._cache[service] = CachedTicket(
                    ticket=ticket,
                    fetched_at=datetime.now(),
                    ttl_seconds=self.config.cache_ttl_seconds
                )

        return ticket

    def _get_from_cache(self, service: str) -> Optional[AuthTicket]:
        with self._cache_lock:
            cached = self._cache.get(service)
            if cached and not cached.is_expired:
                return cached.ticket
            elif cached:
                del self._cache[service]
            return None

    def _fetch_from_secret_manager(self, service: str) -> AuthTicket:
        secret_name = self.config.get_secret_name(self.cuit, service)

        try:
            response = self._client.access_secret_version(name=secret_name)
            data = json.loads(response.payload.data.decode("UTF-8"))

            return AuthTicket(
                token=data["token"],
                sign=data["sign"],
                represented_tax_id=self.cuit,
                expiry=datetime.fromisoformat(data["expiration_time"])
            )

        except gcp_exceptions.NotFound:
            raise TicketNotFoundError(f"No ticket stored for CUIT {self.cuit}, service: {service}", service)
        except gcp_exceptions.PermissionDenied:
            raise TicketAccessError(f"Access denied to ticket for CUIT {self.cuit}, service: {service}", service)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise TicketParseError(f"Invalid ticket format for {service}: {e}", service)

    def store_ticket(self, service: str, ticket: AuthTicket) -> str:
        """
        Store a ticket, creating the secret on first use.

        Returns:
            Secret version name
        """
        secret_id = self.config.get_secret_id(self.cuit, service)
        parent = f"projects/{self.config.project_id}"
        secret_path = f"{parent}/secrets/{secret_id}"

        data = json.dumps({
            "token": ticket.token,
            "sign": ticket.sign,
            "expiration_time": ticket.expiry.isoformat(),
            "stored_at": datetime.now().isoformat()
        }).encode("UTF-8")

        try:
            self._client.get_secret(name=secret_path)
        except gcp_exceptions.NotFound:
            logger.info(f"Creating ticket secret: {secret_id}")
            self._client.create_secret(
                parent=parent,
                secret_id=secret_id,
                secret={
                    "replication": {"automatic": {}},
                    "labels": {"app": "afip-wsmtxca", "service": service},
                }
            )

        response = self._client.add_secret_version(
            parent=secret_path,
            payload={"data": data}
        )
        self.invalidate_cache(service)

        logger.info(f"Stored ticket version: {response.name}")
        return response.name

    def invalidate_cache(self, service: Optional[str] = None) -> None:
        """Invalidate cached tickets, for one service or all."""
        with self._cache_lock:
            if service:
                self._cache.pop(service, None)
            else:
                self._cache.clear()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    config = SecretManagerConfig(project_id=os.getenv("GCP_PROJECT_ID", "your-project-id"))
    store = SecretManagerTicketStore(config, cuit=int(os.getenv("AFIP_CUIT", "20111111112")))

    try:
        ticket = store.get_ticket(WSMTXCA_SERVICE)
        print(f"✓ Ticket valid until {ticket.expiry.isoformat()}")
    except AfipAuthError as e:
        print(f"✗ Error: {e}")

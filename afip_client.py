"""
AFIP WSMTXCA SOAP Client

Low level access to AFIP's "Factura Electrónica con detalle de ítems"
web service (WSMTXCA): request assembly with WSAA authentication,
remote execution over zeep, response normalization and error
classification.

WS Documentation: https://www.afip.gob.ar/fe/documentos/WSMTXCA-ManualParaElDesarrollador_V1.pdf
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
from zeep import Client
from zeep.exceptions import Fault, TransportError
from zeep.helpers import serialize_object
from zeep.transports import Transport

from afip_auth import WSMTXCA_SERVICE, AfipAuthError, AuthProvider

logger = logging.getLogger(__name__)

# WSMTXCA endpoints
WSMTXCA_WSDL_PRODUCTION = "https://serviciosjava.afip.gob.ar/wsmtxca/services/MTXCAService?wsdl"
WSMTXCA_WSDL_TEST = "https://fwshomo.afip.gov.ar/wsmtxca/services/MTXCAService?wsdl"

# Health check operation, the only one sent without authRequest
DUMMY_OPERATION = "dummy"

# Field every authenticated payload carries
AUTH_REQUEST_FIELD = "authRequest"

# Error list field of WSMTXCA responses
ERRORS_FIELD = "arrayErrores"


# =============================================================================
# CONFIGURATION
# =============================================================================

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class WsmtxcaConfig:
    """WSMTXCA connection configuration."""
    cuit: int = field(default_factory=lambda: int(os.environ.get("AFIP_CUIT", "0")))
    production: bool = field(default_factory=lambda: _env_flag("AFIP_PRODUCTION"))
    wsdl: Optional[str] = field(default_factory=lambda: os.environ.get("AFIP_WSDL"))
    timeout: int = field(default_factory=lambda: int(os.environ.get("AFIP_TIMEOUT", "30")))
    ta_folder: str = field(default_factory=lambda: os.environ.get("AFIP_TA_FOLDER", "./ta"))

    @property
    def wsdl_url(self) -> str:
        """WSDL to load: explicit override, else the environment default."""
        if self.wsdl:
            return self.wsdl
        return WSMTXCA_WSDL_PRODUCTION if self.production else WSMTXCA_WSDL_TEST


# =============================================================================
# ERRORS
# =============================================================================

class AfipApiError(Exception):
    """Base exception for errors reported by or while talking to AFIP."""
    def __init__(self, code: Union[int, str], message: str, technical_message: str = ""):
        self.code = code
        self.message = message
        self.technical_message = technical_message
        super().__init__(f"AFIP Error [{code}]: {message}")


class TransportFault(AfipApiError):
    """SOAP fault or HTTP/network failure raised by the RPC channel."""


class ApplicationError(AfipApiError):
    """Error entry reported by the service inside arrayErrores."""


class MalformedResponseError(AfipApiError):
    """Response lacks a field the operation depends on."""
    def __init__(self, operation: str, path: str):
        self.operation = operation
        self.path = path
        super().__init__("MALFORMED_RESPONSE", f"{operation} response has no '{path}'")


@dataclass(frozen=True)
class NoResult:
    """
    Returned instead of a response when the service answered with an
    error list. Always falsy.
    """
    errors: Tuple[ApplicationError, ...] = ()

    def __bool__(self) -> bool:
        return False

    def raise_for_errors(self) -> None:
        """Raise the first reported error, if any."""
        if self.errors:
            raise self.errors[0]


def coerce_fault_code(code: Any) -> Union[int, str]:
    """
    Normalize a SOAP fault code.

    Namespace prefixes are dropped ("ns1:602" -> "602") and numeric codes
    become ints so they compare against AFIP's numeric error codes.
    """
    if code is None:
        return "UNKNOWN"
    text = str(code).strip()
    if ":" in text:
        text = text.rsplit(":", 1)[1]
    return int(text) if text.isdigit() else text


# =============================================================================
# RPC CHANNEL
# =============================================================================

class SoapChannel:
    """
    zeep backed RPC channel.

    ``call(operation, payload)`` invokes the named WSDL operation with the
    payload's top level keys as arguments. All failures surface as
    TransportFault.
    """

    def __init__(
        self,
        wsdl: str,
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        self.wsdl = wsdl
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "afip-wsmtxca/1.0 (Python/Zeep)"})
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        """zeep client, created on first use (loading the WSDL needs network)."""
        if self._client is None:
            logger.info(f"Loading WSMTXCA WSDL: {self.wsdl}")
            transport = Transport(
                session=self.session,
                timeout=self.timeout,
                operation_timeout=self.timeout,
            )
            try:
                self._client = Client(wsdl=self.wsdl, transport=transport)
            except requests.RequestException as e:
                raise TransportFault("NETWORK_ERROR", f"Cannot load WSDL: {e}") from e
        return self._client

    def call(self, operation: str, payload: Dict[str, Any]) -> Any:
        service_operation = getattr(self.client.service, operation)
        try:
            return service_operation(**payload)
        except Fault as e:
            raise TransportFault(
                code=coerce_fault_code(e.code),
                message=e.message or "SOAP fault",
                technical_message=str(e.detail) if e.detail is not None else ""
            ) from e
        except TransportError as e:
            raise TransportFault(
                code=f"HTTP_{e.status_code}",
                message=f"HTTP error {e.status_code}",
                technical_message=(e.content or b"")[:500].decode("utf-8", "replace")
            ) from e
        except requests.Timeout as e:
            raise TransportFault("TIMEOUT", "Request timed out") from e
        except requests.RequestException as e:
            raise TransportFault("NETWORK_ERROR", str(e)) from e


# =============================================================================
# REQUEST BUILDER
# =============================================================================

class RequestBuilder:
    """Attaches WSAA authentication to operation payloads."""

    def __init__(self, auth_provider: AuthProvider, service: str = WSMTXCA_SERVICE):
        self.auth_provider = auth_provider
        self.service = service

    def build(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Build the payload for an operation.

        The health check is sent as given. Every other operation gets an
        authRequest block; keys supplied by the caller override it.

        Raises:
            AfipAuthError: If no ticket could be obtained
        """
        params = dict(params or {})
        if operation == DUMMY_OPERATION:
            return params

        try:
            ticket = self.auth_provider.get_ticket(self.service)
        except AfipAuthError:
            raise
        except Exception as e:
            raise AfipAuthError(f"Could not obtain ticket for {self.service}: {e}", self.service) from e

        payload = {
            AUTH_REQUEST_FIELD: {
                "token": ticket.token,
                "sign": ticket.sign,
                "cuitRepresentada": ticket.represented_tax_id,
            }
        }
        payload.update(params)
        return payload


# =============================================================================
# SERVICE CLIENT
# =============================================================================

class ServiceClient:
    """
    Executes WSMTXCA operations.

    Transport faults propagate as raised by the channel. Responses carrying
    arrayErrores are downgraded to a NoResult.
    """

    def __init__(self, channel, request_builder: RequestBuilder):
        self.channel = channel
        self.request_builder = request_builder

    def execute(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Union[Any, NoResult]:
        payload = self.request_builder.build(operation, params)

        logger.debug(f"Calling {operation}")
        raw = self.channel.call(operation, payload)
        result = serialize_object(raw, dict)

        if isinstance(result, dict) and result.get(ERRORS_FIELD):
            errors = self._parse_errors(result[ERRORS_FIELD])
            for error in errors:
                logger.warning(f"{operation} returned error {error.code}: {error.message}")
            return NoResult(errors=tuple(errors))

        return result

    @staticmethod
    def _parse_errors(array_errors: Any) -> List[ApplicationError]:
        """Turn an arrayErrores block into ApplicationError entries."""
        entries = array_errors
        if isinstance(entries, dict):
            entries = entries.get("codigoDescripcion", entries)
        if isinstance(entries, dict):
            entries = [entries]
        if not isinstance(entries, list):
            return [ApplicationError("UNKNOWN", str(array_errors))]

        errors = []
        for entry in entries:
            if isinstance(entry, dict):
                errors.append(ApplicationError(
                    coerce_fault_code(entry.get("codigo")),
                    str(entry.get("descripcion") or "")
                ))
            else:
                errors.append(ApplicationError("UNKNOWN", str(entry)))
        return errors

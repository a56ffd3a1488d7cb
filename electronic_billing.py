"""
AFIP Electronic Billing with Items (WSMTXCA)

Caller facing operations: last voucher lookup, voucher authorization
(CAE request), voucher information and the service's reference tables.

Usage:
    config = WsmtxcaConfig(cuit=20111111112)
    store = TicketStore(cuit=config.cuit, folder=config.ta_folder)
    billing = ElectronicBilling.from_config(config, store)

    result = billing.create_next_voucher(VoucherRequest(
        voucher_type=6,
        sales_point=1,
        document_number="37375002",
        taxed_amount=100,
        total_amount=121,
        items=[LineItem(...)],
    ))
    print(result.cae, result.cae_expiry)
"""

import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

from afip_auth import AuthProvider, TicketStore
from afip_client import (
    DUMMY_OPERATION,
    AfipApiError,
    MalformedResponseError,
    NoResult,
    RequestBuilder,
    ServiceClient,
    SoapChannel,
    WsmtxcaConfig,
)

logger = logging.getLogger(__name__)

# Wire constants fixed by WSMTXCA
NOT_FOUND_ERROR_CODE = 602
VAT_RATE = Decimal("1.21")
VAT_21_ALIQUOT_CODE = 5
BUYER_DOCUMENT_TYPE_DNI = "96"
DEFAULT_CURRENCY = "PES"
DEFAULT_EXCHANGE_RATE = 1
DEFAULT_CONCEPT = 1

TWO_PLACES = Decimal("0.01")

# Reference tables: facade method -> (operation, path to the list)
REFERENCE_TABLES = {
    "voucher_types": ("FEParamGetTiposCbte", ("ResultGet", "CbteTipo")),
    "concept_types": ("FEParamGetTiposConcepto", ("ResultGet", "ConceptoTipo")),
    "document_types": ("consultarTiposDocumento", ("arrayTiposDocumento",)),
    "aliquot_types": ("FEParamGetTiposIva", ("ResultGet", "IvaTipo")),
    "currencies_types": ("FEParamGetTiposMonedas", ("ResultGet", "Moneda")),
    "options_types": ("FEParamGetTiposOpcional", ("ResultGet", "OpcionalTipo")),
    "tax_types": ("FEParamGetTiposTributos", ("ResultGet", "TributoTipo")),
}


class AfipValidationError(ValueError):
    """Invalid input supplied by the caller."""
    pass


def _to_decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise AfipValidationError(f"Invalid amount for {name}: {value!r}")


def compute_vat(total: Any) -> Dict[str, Decimal]:
    """
    Split a VAT-inclusive total at 21%.

    taxed = total - round(total / 1.21, 2); net = total - taxed

    >>> compute_vat(121)
    {'taxed': Decimal('21.00'), 'net': Decimal('100.00')}
    """
    total = _to_decimal(total, "total")
    taxed = total - (total / VAT_RATE).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return {"taxed": taxed, "net": total - taxed}


def format_date(date: Union[str, int]) -> str:
    """
    Change date from AFIP format (yyyymmdd) to yyyy-mm-dd.

    Raises:
        AfipValidationError: If the value is not an 8 digit valid date
    """
    text = str(date).strip()
    if not re.fullmatch(r"\d{8}", text):
        raise AfipValidationError(f"Invalid date format: {date}. Expected YYYYMMDD")
    try:
        return datetime.strptime(text, "%Y%m%d").strftime("%Y-%m-%d")
    except ValueError:
        raise AfipValidationError(f"Invalid date: {date}")


# =============================================================================
# REQUEST / RESULT TYPES
# =============================================================================

@dataclass
class LineItem:
    """Voucher line (arrayItems/item)."""
    units: Any                    # unidadesMtx
    mtx_code: str                 # codigoMtx (GTIN)
    code: str                     # codigo, internal product code
    description: str
    unit_of_measure: int          # codigoUnidadMedida
    vat_condition: int            # codigoCondicionIVA
    quantity: Any
    unit_price: Any
    amount: Any                   # importeItem

    def __post_init__(self):
        for name in ("units", "quantity", "unit_price", "amount"):
            value = _to_decimal(getattr(self, name), name)
            if value < 0:
                raise AfipValidationError(f"{name} must not be negative")
            setattr(self, name, value)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        return cls(
            units=data["unidadesMtx"],
            mtx_code=data["codigoMtx"],
            code=data["codigo"],
            description=data["descripcion"],
            unit_of_measure=data["codigoUnidadMedida"],
            vat_condition=data["codigoCondicionIVA"],
            quantity=data["cantidad"],
            unit_price=data["precioUnitario"],
            amount=data["importeItem"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unidadesMtx": self.units,
            "codigoMtx": self.mtx_code,
            "codigo": self.code,
            "descripcion": self.description,
            "codigoUnidadMedida": self.unit_of_measure,
            "codigoCondicionIVA": self.vat_condition,
            "cantidad": self.quantity,
            "precioUnitario": self.unit_price,
            "importeItem": self.amount,
        }


@dataclass
class VoucherRequest:
    """Caller data for a single voucher."""
    voucher_type: int
    sales_point: int
    document_number: str          # buyer DNI
    taxed_amount: Any
    total_amount: Any
    items: List[LineItem] = field(default_factory=list)
    voucher_number: Optional[int] = None

    def __post_init__(self):
        self.taxed_amount = _to_decimal(self.taxed_amount, "taxed_amount")
        self.total_amount = _to_decimal(self.total_amount, "total_amount")
        if self.taxed_amount < 0:
            raise AfipValidationError("taxed_amount must not be negative")
        if self.total_amount < self.taxed_amount:
            raise AfipValidationError("total_amount must be greater than or equal to taxed_amount")
        if self.voucher_number is not None:
            try:
                self.voucher_number = int(self.voucher_number)
            except (TypeError, ValueError):
                raise AfipValidationError(f"Invalid voucher_number: {self.voucher_number!r}")
            if self.voucher_number < 1:
                raise AfipValidationError("voucher_number must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoucherRequest":
        """Build a request from its WSMTXCA field names."""
        return cls(
            voucher_type=data["codigoTipoComprobante"],
            sales_point=data["numeroPuntoVenta"],
            document_number=data["numeroDocumento"],
            taxed_amount=data["importeGravado"],
            total_amount=data["importeTotal"],
            items=[
                item if isinstance(item, LineItem) else LineItem.from_dict(item)
                for item in data.get("items", [])
            ],
            voucher_number=data.get("numeroComprobante"),
        )


@dataclass(frozen=True)
class VoucherResult:
    """CAE granted to an authorized voucher."""
    cae: str
    cae_expiry: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"CAE": self.cae, "CAEFchVto": self.cae_expiry}


# =============================================================================
# FACADE
# =============================================================================

class ElectronicBilling:
    """
    WSMTXCA voucher operations.

    Lookups that AFIP answers with error 602 ("no data") return None,
    any other lookup error is raised. For the remaining operations a
    response with an error list comes back as a falsy NoResult carrying
    the errors.
    """

    def __init__(self, service_client: ServiceClient):
        self.service_client = service_client

    @classmethod
    def from_config(cls, config: WsmtxcaConfig, auth_provider: Optional[AuthProvider] = None) -> "ElectronicBilling":
        """Wire a facade over a zeep channel for the configured environment."""
        if auth_provider is None:
            auth_provider = TicketStore(
                cuit=config.cuit,
                folder=config.ta_folder,
                production=config.production
            )
        channel = SoapChannel(config.wsdl_url, timeout=config.timeout)
        logger.info(f"ElectronicBilling for CUIT {config.cuit} using {config.wsdl_url}")
        return cls(ServiceClient(channel, RequestBuilder(auth_provider)))

    def _execute_lookup(self, operation: str, params: Dict[str, Any]):
        # 602 means "no data" whether it arrives as a fault or in an error list
        try:
            result = self.service_client.execute(operation, params)
        except AfipApiError as e:
            if e.code == NOT_FOUND_ERROR_CODE:
                logger.debug(f"{operation}: nothing found (602)")
                return None
            raise

        if isinstance(result, NoResult):
            if result.errors and result.errors[0].code == NOT_FOUND_ERROR_CODE:
                logger.debug(f"{operation}: nothing found (602)")
                return None
            result.raise_for_errors()
            raise MalformedResponseError(operation, "arrayErrores")
        return result

    # =========================================================================
    # VOUCHERS
    # =========================================================================

    def get_last_voucher(self, sales_point: int, voucher_type: int) -> Optional[int]:
        """
        Get the number of the last authorized voucher.

        Args:
            sales_point: Sales point to ask for
            voucher_type: Voucher type to ask for

        Returns:
            Last voucher number, or None if none was authorized yet

        Raises:
            MalformedResponseError: If the response has no numeroComprobante
            AfipApiError: On any other remote error, including error lists
        """
        operation = "consultarUltimoComprobanteAutorizado"
        result = self._execute_lookup(operation, {
            "consultaUltimoComprobanteAutorizadoRequest": {
                "codigoTipoComprobante": voucher_type,
                "numeroPuntoVenta": sales_point,
            }
        })

        if result is None:
            return None
        number = result.get("numeroComprobante") if isinstance(result, dict) else None
        if number is None:
            raise MalformedResponseError(operation, "numeroComprobante")
        return int(number)

    def create_voucher(
        self,
        request: VoucherRequest,
        return_full_response: bool = False
    ) -> Union[VoucherResult, Dict[str, Any], NoResult]:
        """
        Request a CAE for a voucher.

        VAT is computed from the total at 21% and sent as a single
        subtotalIVA entry. The issue date is today.

        Args:
            request: Voucher data, including its number
            return_full_response: Return the complete response instead of
                the CAE and its expiry

        Returns:
            VoucherResult, the full response, or NoResult if AFIP
            rejected the voucher with an error list
        """
        if request.voucher_number is None:
            raise AfipValidationError("voucher_number is required, use create_next_voucher to derive it")

        vat = compute_vat(request.total_amount)
        params = {
            "comprobanteCAERequest": {
                "codigoTipoComprobante": request.voucher_type,
                "numeroPuntoVenta": request.sales_point,
                "numeroComprobante": request.voucher_number,
                "fechaEmision": datetime.now().strftime("%Y-%m-%d"),
                "codigoTipoDocumento": BUYER_DOCUMENT_TYPE_DNI,
                "numeroDocumento": request.document_number,
                "importeGravado": vat["net"],
                "importeNoGravado": 0,
                "importeExento": 0,
                "importeSubtotal": request.taxed_amount,
                "importeTotal": request.total_amount,
                "codigoMoneda": DEFAULT_CURRENCY,
                "cotizacionMoneda": DEFAULT_EXCHANGE_RATE,
                "codigoConcepto": DEFAULT_CONCEPT,
                "arraySubtotalesIVA": {
                    "subtotalIVA": {
                        "codigo": VAT_21_ALIQUOT_CODE,
                        "importe": vat["taxed"],
                    }
                },
                "arrayItems": {
                    "item": [item.to_dict() for item in request.items]
                },
            }
        }

        result = self.service_client.execute("autorizarComprobante", params)

        if return_full_response or isinstance(result, NoResult):
            return result

        response = result.get("comprobanteResponse") if isinstance(result, dict) else None
        if not response:
            raise MalformedResponseError("autorizarComprobante", "comprobanteResponse")

        logger.info(
            f"Voucher {request.voucher_type}-{request.sales_point}-{request.voucher_number} "
            f"authorized with CAE {response.get('CAE')}"
        )
        return VoucherResult(
            cae=response.get("CAE"),
            cae_expiry=response.get("fechaVencimientoCAE"),
        )

    def create_next_voucher(self, request: VoucherRequest) -> Union[VoucherResult, NoResult]:
        """
        Authorize the voucher following the last authorized one.

        Combines get_last_voucher and create_voucher. The caller's request
        is not modified.
        """
        last_voucher = self.get_last_voucher(request.sales_point, request.voucher_type)
        voucher_number = (last_voucher or 0) + 1
        return self.create_voucher(replace(request, voucher_number=voucher_number))

    def get_voucher_info(self, number: int, sales_point: int, voucher_type: int) -> Optional[Dict[str, Any]]:
        """
        Get complete information of a voucher.

        Returns:
            The consultarComprobante response, or None if the voucher
            does not exist
        """
        return self._execute_lookup("consultarComprobante", {
            "consultaComprobanteRequest": {
                "codigoTipoComprobante": voucher_type,
                "numeroPuntoVenta": sales_point,
                "numeroComprobante": number,
            }
        })

    # =========================================================================
    # REFERENCE TABLES
    # =========================================================================

    def _get_reference_table(self, name: str) -> Union[List[Any], NoResult]:
        operation, path = REFERENCE_TABLES[name]
        result = self.service_client.execute(operation)
        if isinstance(result, NoResult):
            return result

        value = result
        for key in path:
            if not isinstance(value, dict) or value.get(key) is None:
                raise MalformedResponseError(operation, ".".join(path))
            value = value[key]
        return value

    def get_voucher_types(self):
        """Voucher types available."""
        return self._get_reference_table("voucher_types")

    def get_concept_types(self):
        """Voucher concepts available."""
        return self._get_reference_table("concept_types")

    def get_document_types(self):
        """Document types available."""
        return self._get_reference_table("document_types")

    def get_aliquot_types(self):
        """VAT aliquots available."""
        return self._get_reference_table("aliquot_types")

    def get_currencies_types(self):
        """Currencies available."""
        return self._get_reference_table("currencies_types")

    def get_options_types(self):
        """Optional data types available."""
        return self._get_reference_table("options_types")

    def get_tax_types(self):
        """Taxes available."""
        return self._get_reference_table("tax_types")

    # =========================================================================
    # STATUS / UTILITIES
    # =========================================================================

    def get_server_status(self) -> Dict[str, Any]:
        """
        Ask the web service for its servers status.

        Returns:
            Status of the application, database and authentication servers
        """
        return self.service_client.execute(DUMMY_OPERATION)

    format_date = staticmethod(format_date)


# =============================================================================
# USAGE EXAMPLE
# =============================================================================

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    config = WsmtxcaConfig()
    billing = ElectronicBilling.from_config(config)

    print(f"Server status: {billing.get_server_status()}")

    request = VoucherRequest.from_dict({
        "codigoTipoComprobante": 6,
        "numeroPuntoVenta": 1,
        "numeroDocumento": os.getenv("AFIP_BUYER_DNI", "37375002"),
        "importeGravado": 100,
        "importeTotal": 121,
        "items": [{
            "unidadesMtx": 1,
            "codigoMtx": "7790001001030",
            "codigo": "rma",
            "descripcion": "RMA",
            "codigoUnidadMedida": 7,
            "codigoCondicionIVA": 5,
            "cantidad": 1,
            "precioUnitario": 121,
            "importeItem": 121,
        }],
    })

    try:
        result = billing.create_next_voucher(request)
        if isinstance(result, NoResult):
            print(f"✗ Voucher rejected: {[str(e) for e in result.errors]}")
        else:
            print(f"✓ CAE {result.cae}, expires {result.cae_expiry}")
    except AfipApiError as e:
        print(f"✗ AFIP Error: {e}")

"""
Unit Tests for the AFIP WSMTXCA SOAP client

Run with: pytest test_afip_client.py -v
"""

import pytest
import requests
from unittest.mock import Mock, MagicMock, patch
from datetime import datetime, timedelta, timezone

from zeep.exceptions import Fault, TransportError

from afip_auth import AfipAuthError, AuthTicket
from afip_client import (
    AUTH_REQUEST_FIELD,
    WSMTXCA_WSDL_PRODUCTION,
    WSMTXCA_WSDL_TEST,
    AfipApiError,
    ApplicationError,
    MalformedResponseError,
    NoResult,
    RequestBuilder,
    ServiceClient,
    SoapChannel,
    TransportFault,
    WsmtxcaConfig,
    coerce_fault_code,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ticket():
    """Valid WSAA ticket."""
    return AuthTicket(
        token="TOKEN123",
        sign="SIGN456",
        represented_tax_id=20111111112,
        expiry=datetime.now(timezone.utc) + timedelta(hours=12)
    )


@pytest.fixture
def auth_provider(ticket):
    provider = Mock()
    provider.get_ticket.return_value = ticket
    return provider


@pytest.fixture
def request_builder(auth_provider):
    return RequestBuilder(auth_provider)


@pytest.fixture
def channel():
    return Mock()


@pytest.fixture
def service_client(channel, request_builder):
    return ServiceClient(channel, request_builder)


@pytest.fixture
def mock_zeep_client():
    """Mock zeep Client class used by SoapChannel."""
    with patch('afip_client.Client') as mock_class, patch('afip_client.Transport'):
        mock_client = MagicMock()
        mock_class.return_value = mock_client
        yield mock_client


# =============================================================================
# CONFIGURATION TESTS
# =============================================================================

class TestWsmtxcaConfig:
    """Test environment driven configuration."""

    def test_defaults_use_homologation(self, monkeypatch):
        for name in ("AFIP_CUIT", "AFIP_PRODUCTION", "AFIP_WSDL", "AFIP_TIMEOUT", "AFIP_TA_FOLDER"):
            monkeypatch.delenv(name, raising=False)

        config = WsmtxcaConfig()

        assert config.cuit == 0
        assert config.production is False
        assert config.timeout == 30
        assert config.ta_folder == "./ta"
        assert config.wsdl_url == WSMTXCA_WSDL_TEST

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("AFIP_CUIT", "20111111112")
        monkeypatch.setenv("AFIP_PRODUCTION", "true")
        monkeypatch.setenv("AFIP_TIMEOUT", "60")
        monkeypatch.delenv("AFIP_WSDL", raising=False)

        config = WsmtxcaConfig()

        assert config.cuit == 20111111112
        assert config.production is True
        assert config.timeout == 60
        assert config.wsdl_url == WSMTXCA_WSDL_PRODUCTION

    def test_explicit_wsdl_wins(self):
        config = WsmtxcaConfig(cuit=1, production=True, wsdl="/etc/afip/wsmtxca.wsdl")
        assert config.wsdl_url == "/etc/afip/wsmtxca.wsdl"


# =============================================================================
# ERROR TESTS
# =============================================================================

class TestErrors:
    """Test error types and fault code normalization."""

    def test_api_error_fields(self):
        error = AfipApiError(602, "Sin resultados", "detail")
        assert error.code == 602
        assert error.message == "Sin resultados"
        assert error.technical_message == "detail"
        assert "602" in str(error)

    def test_error_hierarchy(self):
        assert issubclass(TransportFault, AfipApiError)
        assert issubclass(ApplicationError, AfipApiError)
        assert issubclass(MalformedResponseError, AfipApiError)

    def test_malformed_response_error(self):
        error = MalformedResponseError("consultarComprobante", "comprobante")
        assert error.code == "MALFORMED_RESPONSE"
        assert error.operation == "consultarComprobante"

    @pytest.mark.parametrize("raw, expected", [
        ("602", 602),
        ("ns1:602", 602),
        (602, 602),
        ("soap:Server", "Server"),
        (None, "UNKNOWN"),
    ])
    def test_coerce_fault_code(self, raw, expected):
        assert coerce_fault_code(raw) == expected

    def test_no_result_is_falsy(self):
        assert not NoResult()
        assert bool(NoResult(errors=(ApplicationError(101, "x"),))) is False

    def test_no_result_raise_for_errors(self):
        error = ApplicationError(101, "Campo requerido")
        with pytest.raises(ApplicationError) as exc_info:
            NoResult(errors=(error,)).raise_for_errors()
        assert exc_info.value is error

    def test_no_result_without_errors_does_not_raise(self):
        NoResult().raise_for_errors()


# =============================================================================
# REQUEST BUILDER TESTS
# =============================================================================

class TestRequestBuilder:
    """Test authentication merging."""

    def test_adds_auth_request(self, request_builder, auth_provider):
        payload = request_builder.build("consultarComprobante", {"consultaComprobanteRequest": {"numeroComprobante": 1}})

        auth_provider.get_ticket.assert_called_once_with("wsmtxca")
        assert payload[AUTH_REQUEST_FIELD] == {
            "token": "TOKEN123",
            "sign": "SIGN456",
            "cuitRepresentada": 20111111112,
        }
        assert payload["consultaComprobanteRequest"] == {"numeroComprobante": 1}

    def test_dummy_is_not_authenticated(self, request_builder, auth_provider):
        payload = request_builder.build("dummy", {"x": 1})

        assert payload == {"x": 1}
        auth_provider.get_ticket.assert_not_called()

    def test_dummy_without_params(self, request_builder):
        assert request_builder.build("dummy") == {}

    def test_caller_fields_take_precedence(self, request_builder):
        custom_auth = {"token": "MINE", "sign": "MINE", "cuitRepresentada": 1}

        payload = request_builder.build("consultarTiposDocumento", {AUTH_REQUEST_FIELD: custom_auth})

        assert payload[AUTH_REQUEST_FIELD] == custom_auth

    def test_does_not_mutate_params(self, request_builder):
        params = {"a": 1}
        request_builder.build("autorizarComprobante", params)
        assert params == {"a": 1}

    def test_ticket_fetched_on_every_call(self, request_builder, auth_provider):
        request_builder.build("consultarTiposDocumento")
        request_builder.build("consultarTiposDocumento")
        assert auth_provider.get_ticket.call_count == 2

    def test_auth_error_propagates(self, request_builder, auth_provider):
        error = AfipAuthError("expired", "wsmtxca")
        auth_provider.get_ticket.side_effect = error

        with pytest.raises(AfipAuthError) as exc_info:
            request_builder.build("autorizarComprobante")

        assert exc_info.value is error

    def test_provider_failure_wrapped_as_auth_error(self, request_builder, auth_provider):
        auth_provider.get_ticket.side_effect = OSError("disk unavailable")

        with pytest.raises(AfipAuthError, match="disk unavailable"):
            request_builder.build("autorizarComprobante")


# =============================================================================
# SERVICE CLIENT TESTS
# =============================================================================

class TestServiceClient:
    """Test execution, normalization and error classification."""

    def test_execute_returns_response(self, service_client, channel):
        channel.call.return_value = {"numeroComprobante": 5, "arrayErrores": None}

        result = service_client.execute("consultarUltimoComprobanteAutorizado", {"req": {}})

        assert result["numeroComprobante"] == 5
        operation, payload = channel.call.call_args[0]
        assert operation == "consultarUltimoComprobanteAutorizado"
        assert AUTH_REQUEST_FIELD in payload
        assert payload["req"] == {}

    def test_error_list_returns_no_result(self, service_client, channel):
        channel.call.return_value = {
            "arrayErrores": {
                "codigoDescripcion": [
                    {"codigo": 101, "descripcion": "Campo requerido"},
                    {"codigo": 102, "descripcion": "Valor invalido"},
                ]
            }
        }

        result = service_client.execute("autorizarComprobante", {})

        assert isinstance(result, NoResult)
        assert [e.code for e in result.errors] == [101, 102]
        assert result.errors[0].message == "Campo requerido"

    def test_single_error_entry(self, service_client, channel):
        channel.call.return_value = {
            "arrayErrores": {"codigoDescripcion": {"codigo": "1500", "descripcion": "Error"}}
        }

        result = service_client.execute("autorizarComprobante", {})

        assert isinstance(result, NoResult)
        assert result.errors[0].code == 1500

    def test_empty_error_list_is_success(self, service_client, channel):
        channel.call.return_value = {"arrayErrores": [], "comprobanteResponse": {"CAE": "1"}}

        result = service_client.execute("autorizarComprobante", {})

        assert not isinstance(result, NoResult)
        assert result["comprobanteResponse"]["CAE"] == "1"

    def test_transport_fault_propagates_unmodified(self, service_client, channel):
        fault = TransportFault(602, "Sin resultados")
        channel.call.side_effect = fault

        with pytest.raises(TransportFault) as exc_info:
            service_client.execute("consultarComprobante", {})

        assert exc_info.value is fault

    def test_auth_error_raised_before_remote_call(self, service_client, channel, auth_provider):
        auth_provider.get_ticket.side_effect = AfipAuthError("no ticket")

        with pytest.raises(AfipAuthError):
            service_client.execute("autorizarComprobante", {})

        channel.call.assert_not_called()

    def test_dummy_skips_auth(self, service_client, channel, auth_provider):
        channel.call.return_value = {"appserver": "OK", "dbserver": "OK", "authserver": "OK"}

        result = service_client.execute("dummy")

        channel.call.assert_called_once_with("dummy", {})
        auth_provider.get_ticket.assert_not_called()
        assert result["appserver"] == "OK"

    def test_non_dict_response_passed_through(self, service_client, channel):
        channel.call.return_value = None
        assert service_client.execute("consultarTiposDocumento") is None


# =============================================================================
# SOAP CHANNEL TESTS
# =============================================================================

class TestSoapChannel:
    """Test the zeep channel and its failure mapping."""

    def test_client_created_lazily(self):
        with patch('afip_client.Client') as mock_class, patch('afip_client.Transport'):
            channel = SoapChannel(WSMTXCA_WSDL_TEST)
            mock_class.assert_not_called()

            channel.client
            channel.client

            mock_class.assert_called_once()
            assert mock_class.call_args[1]["wsdl"] == WSMTXCA_WSDL_TEST

    def test_transport_uses_session_and_timeout(self):
        session = requests.Session()
        with patch('afip_client.Client'), patch('afip_client.Transport') as mock_transport:
            channel = SoapChannel(WSMTXCA_WSDL_TEST, timeout=12, session=session)
            channel.client

        kwargs = mock_transport.call_args[1]
        assert kwargs["session"] is session
        assert kwargs["timeout"] == 12
        assert kwargs["operation_timeout"] == 12

    def test_call_passes_payload_as_arguments(self, mock_zeep_client):
        mock_zeep_client.service.consultarComprobante.return_value = {"ok": True}
        channel = SoapChannel(WSMTXCA_WSDL_TEST)

        result = channel.call("consultarComprobante", {"authRequest": {"token": "t"}, "consultaComprobanteRequest": {}})

        assert result == {"ok": True}
        mock_zeep_client.service.consultarComprobante.assert_called_once_with(
            authRequest={"token": "t"}, consultaComprobanteRequest={}
        )

    def test_soap_fault_mapped(self, mock_zeep_client):
        mock_zeep_client.service.consultarComprobante.side_effect = Fault("Sin resultados", code="ns1:602")
        channel = SoapChannel(WSMTXCA_WSDL_TEST)

        with pytest.raises(TransportFault) as exc_info:
            channel.call("consultarComprobante", {})

        assert exc_info.value.code == 602
        assert exc_info.value.message == "Sin resultados"

    def test_http_error_mapped(self, mock_zeep_client):
        mock_zeep_client.service.dummy.side_effect = TransportError(status_code=503, content=b"Service Unavailable")
        channel = SoapChannel(WSMTXCA_WSDL_TEST)

        with pytest.raises(TransportFault) as exc_info:
            channel.call("dummy", {})

        assert exc_info.value.code == "HTTP_503"
        assert "Service Unavailable" in exc_info.value.technical_message

    def test_timeout_mapped(self, mock_zeep_client):
        mock_zeep_client.service.dummy.side_effect = requests.Timeout()
        channel = SoapChannel(WSMTXCA_WSDL_TEST)

        with pytest.raises(TransportFault) as exc_info:
            channel.call("dummy", {})

        assert exc_info.value.code == "TIMEOUT"

    def test_network_error_mapped(self, mock_zeep_client):
        mock_zeep_client.service.dummy.side_effect = requests.ConnectionError("refused")
        channel = SoapChannel(WSMTXCA_WSDL_TEST)

        with pytest.raises(TransportFault) as exc_info:
            channel.call("dummy", {})

        assert exc_info.value.code == "NETWORK_ERROR"

    def test_wsdl_load_failure(self):
        with patch('afip_client.Client', side_effect=requests.ConnectionError("dns")), \
                patch('afip_client.Transport'):
            channel = SoapChannel(WSMTXCA_WSDL_TEST)

            with pytest.raises(TransportFault, match="Cannot load WSDL"):
                channel.client

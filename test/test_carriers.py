import base64
import json
from decimal import Decimal

import httpx
import pytest

from orderflow.carriers import (
    DhlAdapter,
    FedExAdapter,
    MockCarrierAdapter,
    ShipmentRequest,
    map_dhl_status,
    map_fedex_status,
)
from orderflow.errors import RetryableIntegrationFailure, TerminalIntegrationFailure
from orderflow.models import CarrierType, ShipmentStatus, ShippingAccount

pytestmark = pytest.mark.asyncio

LABEL = b"%PDF-1.4 label"

DHL_ACCOUNT = ShippingAccount(
    organization_id="org",
    carrier=CarrierType.DHL,
    credentials={"api_key": "key", "api_secret": "secret", "account_number": "123456789"},
)
FEDEX_ACCOUNT = ShippingAccount(
    organization_id="org",
    carrier=CarrierType.FEDEX,
    credentials={"client_id": "cid", "client_secret": "csecret", "account_number": "740561073"},
)


def make_request(**overrides) -> ShipmentRequest:
    values = {
        "order_id": "order-1",
        "order_number": "ORD-202405-00001",
        "reference": "shipment-create-org-order-1-DHL",
        "ship_to": {"city": "Riyadh", "country": "SA"},
        "declared_value": Decimal("40"),
    }
    values.update(overrides)
    return ShipmentRequest(**values)


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestStatusMapping:
    @pytest.mark.parametrize(
        "code,status",
        [
            ("pre-transit", ShipmentStatus.LABEL_CREATED),
            ("transit", ShipmentStatus.IN_TRANSIT),
            ("Out-For-Delivery", ShipmentStatus.OUT_FOR_DELIVERY),
            ("delivered", ShipmentStatus.DELIVERED),
            ("failure", ShipmentStatus.EXCEPTION),
            ("returned", ShipmentStatus.RETURNED),
            ("something-new", ShipmentStatus.IN_TRANSIT),
        ],
    )
    async def test_dhl(self, code, status):
        assert map_dhl_status(code) == status

    @pytest.mark.parametrize(
        "code,status",
        [
            ("PU", ShipmentStatus.IN_TRANSIT),
            ("od", ShipmentStatus.OUT_FOR_DELIVERY),
            ("DL", ShipmentStatus.DELIVERED),
            ("DE", ShipmentStatus.EXCEPTION),
            ("RS", ShipmentStatus.RETURNED),
            ("ZZ", ShipmentStatus.IN_TRANSIT),
        ],
    )
    async def test_fedex(self, code, status):
        assert map_fedex_status(code) == status


class TestDhlAdapter:
    async def test_create_shipment(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                201,
                json={
                    "shipmentTrackingNumber": "1234567890",
                    "dispatchConfirmationNumber": "PRG200227000256",
                    "documents": [{"typeCode": "label", "content": base64.b64encode(LABEL).decode()}],
                    "shipmentCharges": [{"price": 40.5, "currencyType": "BILLC"}],
                },
            )

        async with client_for(handler) as http:
            result = await DhlAdapter(http, "https://dhl.test/mydhlapi").create_shipment(DHL_ACCOUNT, make_request(), "corr-1")

        assert result.tracking_number == "1234567890"
        assert result.carrier_shipment_id == "PRG200227000256"
        assert result.label == LABEL
        assert result.cost == Decimal("40.5")
        request = seen[0]
        assert request.url == "https://dhl.test/mydhlapi/shipments"
        assert request.headers["Message-Reference"] == "corr-1"
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"key:secret").decode()
        body = json.loads(request.content)
        assert body["customerReferences"][0]["value"] == "shipment-create-org-order-1-DHL"
        assert body["accounts"][0]["number"] == "123456789"

    async def test_server_error_is_retryable(self):
        async with client_for(lambda request: httpx.Response(503, text="Service Unavailable")) as http:
            with pytest.raises(RetryableIntegrationFailure) as exc:
                await DhlAdapter(http, "https://dhl.test").create_shipment(DHL_ACCOUNT, make_request(), "corr-1")
        assert exc.value.status_code == 503

    async def test_rate_limit_is_retryable(self):
        async with client_for(lambda request: httpx.Response(429)) as http:
            with pytest.raises(RetryableIntegrationFailure):
                await DhlAdapter(http, "https://dhl.test").create_shipment(DHL_ACCOUNT, make_request(), "corr-1")

    async def test_validation_error_is_terminal(self):
        response = httpx.Response(400, json={"title": "Bad request", "detail": "Invalid postal code"})
        async with client_for(lambda request: response) as http:
            with pytest.raises(TerminalIntegrationFailure) as exc:
                await DhlAdapter(http, "https://dhl.test").create_shipment(DHL_ACCOUNT, make_request(), "corr-1")
        assert exc.value.status_code == 400
        assert "Invalid postal code" in exc.value.message

    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        async with client_for(handler) as http:
            with pytest.raises(RetryableIntegrationFailure):
                await DhlAdapter(http, "https://dhl.test").create_shipment(DHL_ACCOUNT, make_request(), "corr-1")

    async def test_missing_credentials_fail_before_calling(self):
        calls = []
        account = ShippingAccount(organization_id="org", carrier=CarrierType.DHL, credentials={"api_key": "key"})

        async with client_for(lambda request: calls.append(request) or httpx.Response(200)) as http:
            with pytest.raises(TerminalIntegrationFailure):
                await DhlAdapter(http, "https://dhl.test").create_shipment(account, make_request(), "corr-1")
        assert calls == []

    async def test_tracking(self):
        def handler(request):
            assert request.url.path == "/shipments/1234567890/tracking"
            return httpx.Response(
                200,
                json={
                    "shipments": [
                        {
                            "status": "delivered",
                            "events": [
                                {"date": "2024-05-01", "time": "09:00:00", "statusCode": "transit", "description": "Processed", "serviceArea": [{"description": "Riyadh-SA"}]},
                                {"date": "2024-05-02", "time": "14:30:00", "statusCode": "delivered", "description": "Delivered"},
                            ],
                        }
                    ]
                },
            )

        async with client_for(handler) as http:
            result = await DhlAdapter(http, "https://dhl.test").get_tracking(DHL_ACCOUNT, "1234567890", "corr-2")

        assert result.status == ShipmentStatus.DELIVERED
        assert [e.status for e in result.events] == [ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED]
        assert result.events[0].location == "Riyadh-SA"
        assert result.delivered_at == result.events[-1].event_time
        assert result.delivered_at.hour == 14


class TestFedExAdapter:
    def handler(self, seen):
        def handle(request):
            seen.append(request.url.path)
            if request.url.path == "/oauth/token":
                return httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer tok-1"
            return httpx.Response(
                200,
                json={
                    "output": {
                        "transactionShipments": [
                            {
                                "masterTrackingNumber": "794953535000",
                                "pieceResponses": [{"packageDocuments": [{"encodedLabel": base64.b64encode(LABEL).decode()}]}],
                                "completedShipmentDetail": {"shipmentRating": {"shipmentRateDetails": [{"totalNetCharge": 55.2}]}},
                            }
                        ]
                    }
                },
            )

        return handle

    async def test_create_shipment_and_token_caching(self):
        seen = []
        async with client_for(self.handler(seen)) as http:
            adapter = FedExAdapter(http, "https://fedex.test")
            first = await adapter.create_shipment(FEDEX_ACCOUNT, make_request(), "corr-1")
            await adapter.create_shipment(FEDEX_ACCOUNT, make_request(reference="other"), "corr-2")

        assert first.tracking_number == "794953535000"
        assert first.label == LABEL
        assert first.cost == Decimal("55.2")
        assert seen == ["/oauth/token", "/ship/v1/shipments", "/ship/v1/shipments"]

    async def test_rejected_token_request_is_terminal(self):
        async with client_for(lambda request: httpx.Response(401, json={"errors": [{"code": "NOT.AUTHORIZED.ERROR"}]})) as http:
            with pytest.raises(TerminalIntegrationFailure):
                await FedExAdapter(http, "https://fedex.test").create_shipment(FEDEX_ACCOUNT, make_request(), "corr-1")


class TestMockCarrier:
    async def test_same_reference_same_tracking_number(self):
        adapter = MockCarrierAdapter(CarrierType.FEDEX)

        first = await adapter.create_shipment(FEDEX_ACCOUNT, make_request(reference="ref-1"), "c")
        again = await adapter.create_shipment(FEDEX_ACCOUNT, make_request(reference="ref-1"), "c")
        other = await adapter.create_shipment(FEDEX_ACCOUNT, make_request(reference="ref-2"), "c")

        assert first.tracking_number == again.tracking_number != other.tracking_number
        assert first.tracking_number.startswith("FE")
        assert first.label.startswith(b"%PDF")

    async def test_tracking_walks_the_plan_and_stays_at_the_end(self):
        adapter = MockCarrierAdapter(CarrierType.DHL)

        statuses = [(await adapter.get_tracking(DHL_ACCOUNT, "DH1", "c")).status for _ in range(5)]

        assert statuses == [
            ShipmentStatus.LABEL_CREATED,
            ShipmentStatus.IN_TRANSIT,
            ShipmentStatus.OUT_FOR_DELIVERY,
            ShipmentStatus.DELIVERED,
            ShipmentStatus.DELIVERED,
        ]

    async def test_queued_failures(self):
        adapter = MockCarrierAdapter(CarrierType.DHL)
        adapter.fail_next(RetryableIntegrationFailure("down"))

        with pytest.raises(RetryableIntegrationFailure):
            await adapter.create_shipment(DHL_ACCOUNT, make_request(), "c")
        assert (await adapter.create_shipment(DHL_ACCOUNT, make_request(), "c")).tracking_number

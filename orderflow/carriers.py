"""
Carrier adapters. One implementation per carrier behind CarrierAdapter, selected
through a CarrierType -> adapter table. Every call carries a correlation id;
failures surface as RetryableIntegrationFailure (timeouts, 408/429/5xx) or
TerminalIntegrationFailure (validation, auth).
"""
import base64
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
from pydantic import BaseModel, Field

from orderflow.errors import TerminalIntegrationFailure
from orderflow.integrations import send
from orderflow.models import CarrierType, ShipmentStatus, ShippingAccount, utcnow

logger = logging.getLogger(__name__)

DHL_STATUS_MAPPING: dict[str, ShipmentStatus] = {
    "pre-transit": ShipmentStatus.LABEL_CREATED,
    "picked_up": ShipmentStatus.IN_TRANSIT,
    "transit": ShipmentStatus.IN_TRANSIT,
    "in_transit": ShipmentStatus.IN_TRANSIT,
    "out-for-delivery": ShipmentStatus.OUT_FOR_DELIVERY,
    "delivered": ShipmentStatus.DELIVERED,
    "failure": ShipmentStatus.EXCEPTION,
    "exception": ShipmentStatus.EXCEPTION,
    "returned": ShipmentStatus.RETURNED,
    "cancelled": ShipmentStatus.CANCELLED,
}

FEDEX_STATUS_MAPPING: dict[str, ShipmentStatus] = {
    "PU": ShipmentStatus.IN_TRANSIT,
    "PX": ShipmentStatus.EXCEPTION,
    "IT": ShipmentStatus.IN_TRANSIT,
    "AR": ShipmentStatus.IN_TRANSIT,
    "DP": ShipmentStatus.IN_TRANSIT,
    "OD": ShipmentStatus.OUT_FOR_DELIVERY,
    "DL": ShipmentStatus.DELIVERED,
    "DE": ShipmentStatus.EXCEPTION,
    "CA": ShipmentStatus.CANCELLED,
    "RS": ShipmentStatus.RETURNED,
}


def map_dhl_status(code: str) -> ShipmentStatus:
    return DHL_STATUS_MAPPING.get((code or "").lower(), ShipmentStatus.IN_TRANSIT)


def map_fedex_status(code: str) -> ShipmentStatus:
    return FEDEX_STATUS_MAPPING.get((code or "").upper(), ShipmentStatus.IN_TRANSIT)


class ShipmentRequest(BaseModel):
    order_id: str
    order_number: str
    reference: str  # idempotency reference sent to the carrier (the job id)
    ship_to: dict[str, Any] = Field(default_factory=dict)
    ship_from: dict[str, Any] = Field(default_factory=dict)
    packages: list[dict[str, Any]] = Field(default_factory=lambda: [{"weight": 1.0}])
    service_type: str | None = None
    declared_value: Decimal = Decimal("0")
    currency: str = "SAR"
    test_mode: bool = True


class ShipmentResult(BaseModel):
    carrier_shipment_id: str
    tracking_number: str
    label: bytes | None = None
    label_content_type: str = "application/pdf"
    cost: Decimal | None = None
    estimated_delivery: datetime | None = None


class TrackingUpdate(BaseModel):
    carrier_status: str
    status: ShipmentStatus
    description: str | None = None
    location: str | None = None
    event_time: datetime


class TrackingResult(BaseModel):
    status: ShipmentStatus
    carrier_status: str
    events: list[TrackingUpdate] = Field(default_factory=list)
    estimated_delivery: datetime | None = None
    delivered_at: datetime | None = None


class CarrierAdapter(ABC):
    carrier: CarrierType

    @abstractmethod
    async def create_shipment(
        self, account: ShippingAccount, request: ShipmentRequest, correlation_id: str
    ) -> ShipmentResult: ...

    @abstractmethod
    async def get_tracking(
        self, account: ShippingAccount, tracking_number: str, correlation_id: str
    ) -> TrackingResult: ...


def _credential(account: ShippingAccount, key: str) -> str:
    value = account.credentials.get(key)
    if not value:
        raise TerminalIntegrationFailure(f"{account.carrier.value} account {account.id} is missing '{key}'")
    return value


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class DhlAdapter(CarrierAdapter):
    """MyDHL API (basic auth with the account's api key / secret)."""

    carrier = CarrierType.DHL

    def __init__(self, http: httpx.AsyncClient, base_url: str, timeout: float = 15):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _auth(self, account: ShippingAccount) -> tuple[str, str]:
        return _credential(account, "api_key"), _credential(account, "api_secret")

    async def create_shipment(self, account, request, correlation_id):
        logger.info("DHL create shipment for order %s [correlation_id=%s]", request.order_id, correlation_id)
        payload = {
            "plannedShippingDateAndTime": utcnow().strftime("%Y-%m-%dT%H:%M:%S GMT+00:00"),
            "productCode": request.service_type or "P",
            "accounts": [{"typeCode": "shipper", "number": account.credentials.get("account_number", "")}],
            "customerReferences": [{"value": request.reference, "typeCode": "CU"}],
            "customerDetails": {"shipperDetails": request.ship_from, "receiverDetails": request.ship_to},
            "content": {
                "packages": request.packages,
                "declaredValue": float(request.declared_value),
                "declaredValueCurrency": request.currency,
                "description": f"Order {request.order_number}",
            },
            "outputImageProperties": {"imageOptions": [{"typeCode": "label", "templateName": "ECOM26_84_001"}]},
        }
        response = await send(
            self.http,
            "POST",
            f"{self.base_url}/shipments",
            service="dhl",
            json=payload,
            auth=self._auth(account),
            headers={"Message-Reference": correlation_id, "X-Correlation-ID": correlation_id},
            timeout=self.timeout,
        )
        data = response.json()
        documents = data.get("documents") or []
        label = base64.b64decode(documents[0]["content"]) if documents else None
        charges = data.get("shipmentCharges") or []
        tracking = data.get("shipmentTrackingNumber")
        if not tracking:
            raise TerminalIntegrationFailure("DHL response carried no tracking number")
        return ShipmentResult(
            carrier_shipment_id=data.get("dispatchConfirmationNumber") or tracking,
            tracking_number=tracking,
            label=label,
            label_content_type="application/pdf",
            cost=Decimal(str(charges[0]["price"])) if charges else None,
            estimated_delivery=_parse_time((data.get("estimatedDeliveryDate") or {}).get("estimatedDeliveryDate")),
        )

    async def get_tracking(self, account, tracking_number, correlation_id):
        logger.info("DHL tracking %s [correlation_id=%s]", tracking_number, correlation_id)
        response = await send(
            self.http,
            "GET",
            f"{self.base_url}/shipments/{tracking_number}/tracking",
            service="dhl",
            auth=self._auth(account),
            headers={"Message-Reference": correlation_id, "X-Correlation-ID": correlation_id},
            timeout=self.timeout,
        )
        shipments = response.json().get("shipments") or []
        if not shipments:
            raise TerminalIntegrationFailure(f"DHL has no shipment {tracking_number}")
        shipment = shipments[0]
        events = []
        for event in shipment.get("events") or []:
            code = event.get("statusCode") or event.get("typeCode") or ""
            when = _parse_time(f"{event.get('date')}T{event.get('time', '00:00:00')}") or utcnow()
            area = (event.get("serviceArea") or [{}])[0]
            events.append(
                TrackingUpdate(
                    carrier_status=code,
                    status=map_dhl_status(code),
                    description=event.get("description"),
                    location=area.get("description"),
                    event_time=when,
                )
            )
        code = shipment.get("status") or (events[-1].carrier_status if events else "pre-transit")
        status = map_dhl_status(code)
        return TrackingResult(
            status=status,
            carrier_status=code,
            events=events,
            estimated_delivery=_parse_time(shipment.get("estimatedDeliveryDate")),
            delivered_at=events[-1].event_time if status == ShipmentStatus.DELIVERED and events else None,
        )


class FedExAdapter(CarrierAdapter):
    """FedEx REST API with OAuth client-credentials tokens cached per account."""

    carrier = CarrierType.FEDEX
    TOKEN_REFRESH_BUFFER = 300

    def __init__(self, http: httpx.AsyncClient, base_url: str, timeout: float = 15):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._tokens: dict[str, tuple[str, float]] = {}

    async def _token(self, account: ShippingAccount, correlation_id: str) -> str:
        cached = self._tokens.get(account.id)
        if cached and cached[1] > time.monotonic():
            return cached[0]
        response = await send(
            self.http,
            "POST",
            f"{self.base_url}/oauth/token",
            service="fedex",
            data={
                "grant_type": "client_credentials",
                "client_id": _credential(account, "client_id"),
                "client_secret": _credential(account, "client_secret"),
            },
            headers={"X-Correlation-ID": correlation_id},
            timeout=self.timeout,
        )
        data = response.json()
        token = data["access_token"]
        expires_in = float(data.get("expires_in", 3600))
        self._tokens[account.id] = (token, time.monotonic() + expires_in - self.TOKEN_REFRESH_BUFFER)
        return token

    async def _headers(self, account, correlation_id):
        return {
            "Authorization": f"Bearer {await self._token(account, correlation_id)}",
            "x-customer-transaction-id": correlation_id,
            "X-Correlation-ID": correlation_id,
        }

    async def create_shipment(self, account, request, correlation_id):
        logger.info("FedEx create shipment for order %s [correlation_id=%s]", request.order_id, correlation_id)
        payload = {
            "labelResponseOptions": "LABEL",
            "accountNumber": {"value": account.credentials.get("account_number", "")},
            "requestedShipment": {
                "shipper": request.ship_from,
                "recipients": [request.ship_to],
                "serviceType": request.service_type or "FEDEX_GROUND",
                "packagingType": "YOUR_PACKAGING",
                "pickupType": "USE_SCHEDULED_PICKUP",
                "shippingChargesPayment": {"paymentType": "SENDER"},
                "labelSpecification": {"imageType": "PDF", "labelStockType": "PAPER_85X11_TOP_HALF_LABEL"},
                "customerReferences": [{"customerReferenceType": "CUSTOMER_REFERENCE", "value": request.reference}],
                "requestedPackageLineItems": [
                    {"weight": {"units": "KG", "value": p.get("weight", 1.0)}} for p in request.packages
                ],
            },
        }
        response = await send(
            self.http,
            "POST",
            f"{self.base_url}/ship/v1/shipments",
            service="fedex",
            json=payload,
            headers=await self._headers(account, correlation_id),
            timeout=self.timeout,
        )
        shipments = (response.json().get("output") or {}).get("transactionShipments") or []
        if not shipments:
            raise TerminalIntegrationFailure("FedEx response carried no shipment")
        shipment = shipments[0]
        tracking = shipment.get("masterTrackingNumber")
        pieces = shipment.get("pieceResponses") or [{}]
        documents = pieces[0].get("packageDocuments") or []
        label = base64.b64decode(documents[0]["encodedLabel"]) if documents and documents[0].get("encodedLabel") else None
        rating = (shipment.get("completedShipmentDetail") or {}).get("shipmentRating") or {}
        details = rating.get("shipmentRateDetails") or []
        return ShipmentResult(
            carrier_shipment_id=tracking,
            tracking_number=tracking,
            label=label,
            cost=Decimal(str(details[0]["totalNetCharge"])) if details and "totalNetCharge" in details[0] else None,
            estimated_delivery=_parse_time(
                (shipment.get("completedShipmentDetail") or {}).get("operationalDetail", {}).get("deliveryDate")
            ),
        )

    async def get_tracking(self, account, tracking_number, correlation_id):
        logger.info("FedEx tracking %s [correlation_id=%s]", tracking_number, correlation_id)
        response = await send(
            self.http,
            "POST",
            f"{self.base_url}/track/v1/trackingnumbers",
            service="fedex",
            json={
                "includeDetailedScans": True,
                "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
            },
            headers=await self._headers(account, correlation_id),
            timeout=self.timeout,
        )
        results = (response.json().get("output") or {}).get("completeTrackResults") or []
        track = ((results[0].get("trackResults") or [{}])[0]) if results else {}
        latest = track.get("latestStatusDetail") or {}
        events = []
        for scan in track.get("scanEvents") or []:
            code = scan.get("derivedStatusCode") or scan.get("eventType") or ""
            events.append(
                TrackingUpdate(
                    carrier_status=code,
                    status=map_fedex_status(code),
                    description=scan.get("eventDescription"),
                    location=(scan.get("scanLocation") or {}).get("city"),
                    event_time=_parse_time(scan.get("date")) or utcnow(),
                )
            )
        events.sort(key=lambda e: e.event_time)
        code = latest.get("code") or (events[-1].carrier_status if events else "")
        status = map_fedex_status(code) if code else ShipmentStatus.LABEL_CREATED
        window = (track.get("estimatedDeliveryTimeWindow") or {}).get("window") or {}
        return TrackingResult(
            status=status,
            carrier_status=code,
            events=events,
            estimated_delivery=_parse_time(window.get("ends")),
            delivered_at=events[-1].event_time if status == ShipmentStatus.DELIVERED and events else None,
        )


class MockCarrierAdapter(CarrierAdapter):
    """
    Deterministic stand-in: the same request reference always yields the same
    tracking number. Tracking walks through `tracking_plan` one step per call.
    Failures can be queued with `fail_next`.
    """

    DEFAULT_PLANS = {
        CarrierType.DHL: ["pre-transit", "transit", "out-for-delivery", "delivered"],
        CarrierType.FEDEX: ["PU", "IT", "OD", "DL"],
    }

    def __init__(self, carrier: CarrierType, tracking_plan: list[str] | None = None):
        self.carrier = carrier
        self.tracking_plan = tracking_plan or list(self.DEFAULT_PLANS[carrier])
        self.created: list[ShipmentRequest] = []
        self._failures: list[Exception] = []
        self._tracking_calls: dict[str, int] = {}

    def fail_next(self, error: Exception, times: int = 1) -> None:
        self._failures.extend([error] * times)

    def _raise_queued(self) -> None:
        if self._failures:
            raise self._failures.pop(0)

    def tracking_number_for(self, reference: str) -> str:
        digest = int(hashlib.sha256(reference.encode()).hexdigest()[:12], 16)
        return f"{self.carrier.value[:2]}{digest % 10**10:010d}"

    def _map(self, code: str) -> ShipmentStatus:
        return map_dhl_status(code) if self.carrier == CarrierType.DHL else map_fedex_status(code)

    async def create_shipment(self, account, request, correlation_id):
        logger.info("Mock %s create shipment for order %s [correlation_id=%s]", self.carrier.value, request.order_id, correlation_id)
        self._raise_queued()
        self.created.append(request)
        tracking = self.tracking_number_for(request.reference)
        return ShipmentResult(
            carrier_shipment_id=f"MOCK-{tracking}",
            tracking_number=tracking,
            label=f"%PDF-1.4\n% mock {self.carrier.value} label {tracking}\n".encode(),
            cost=Decimal("25.00"),
            estimated_delivery=utcnow() + timedelta(days=3),
        )

    async def get_tracking(self, account, tracking_number, correlation_id):
        self._raise_queued()
        step = min(self._tracking_calls.get(tracking_number, 0), len(self.tracking_plan) - 1)
        self._tracking_calls[tracking_number] = step + 1
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        events = [
            TrackingUpdate(
                carrier_status=code,
                status=self._map(code),
                description=f"Mock status {code}",
                location="Riyadh",
                event_time=base + timedelta(hours=i),
            )
            for i, code in enumerate(self.tracking_plan[: step + 1])
        ]
        latest = events[-1]
        return TrackingResult(
            status=latest.status,
            carrier_status=latest.carrier_status,
            events=events,
            delivered_at=latest.event_time if latest.status == ShipmentStatus.DELIVERED else None,
        )


def build_carriers(settings, http: httpx.AsyncClient) -> dict[CarrierType, CarrierAdapter]:
    if settings.carrier_mode == "live":
        return {
            CarrierType.DHL: DhlAdapter(http, settings.dhl_api_url, settings.carrier_timeout_seconds),
            CarrierType.FEDEX: FedExAdapter(http, settings.fedex_api_url, settings.carrier_timeout_seconds),
        }
    return {
        CarrierType.DHL: MockCarrierAdapter(CarrierType.DHL),
        CarrierType.FEDEX: MockCarrierAdapter(CarrierType.FEDEX),
    }

"""
Sales channels: mapping raw channel order payloads into ChannelOrder, and the
HTTP clients that page through a channel's order API for scheduled sync.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator

import httpx
from pydantic import BaseModel, Field, ValidationError

from orderflow.errors import MalformedPayload
from orderflow.integrations import send
from orderflow.models import Channel, ChannelType, PaymentStatus

logger = logging.getLogger(__name__)

SHOPIFY_API_VERSION = "2024-01"
WOO_PAID_STATUSES = {"processing", "completed"}


class ChannelLineItem(BaseModel):
    external_item_id: str
    sku: str
    name: str = ""
    quantity: int = Field(gt=0)
    unit_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")


class ChannelOrder(BaseModel):
    """Channel-neutral view of one order payload."""

    external_order_id: str
    order_number: str | None = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    cancelled: bool = False
    currency: str = "SAR"
    subtotal: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    shipping_address: dict[str, Any] = Field(default_factory=dict)
    items: list[ChannelLineItem] = Field(default_factory=list)
    ordered_at: datetime | None = None
    updated_marker: str | None = None

    @property
    def payment_confirmed(self) -> bool:
        return self.payment_status == PaymentStatus.PAID


def _money(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise MalformedPayload(f"Invalid amount: {value!r}")


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _require_id(payload: dict) -> str:
    resource_id = payload.get("id")
    if resource_id in (None, ""):
        raise MalformedPayload("Order payload has no id")
    return str(resource_id)


def _map_flat(payload: dict) -> ChannelOrder:
    external_id = _require_id(payload)
    try:
        quantity = int(payload.get("qty", payload.get("quantity", 1)))
    except (TypeError, ValueError):
        raise MalformedPayload(f"Invalid quantity: {payload.get('qty')!r}")
    if quantity <= 0:
        raise MalformedPayload(f"Invalid quantity: {quantity}")
    price = _money(payload.get("price"))
    return ChannelOrder(
        external_order_id=external_id,
        payment_status=PaymentStatus.PAID if payload.get("paid") else PaymentStatus.PENDING,
        cancelled=bool(payload.get("cancelled")),
        subtotal=price * quantity,
        total_amount=price * quantity,
        items=[
            ChannelLineItem(
                external_item_id=f"{external_id}-1",
                sku=str(payload["sku"]),
                quantity=quantity,
                unit_price=price,
                total_price=price * quantity,
            )
        ],
        updated_marker=payload.get("updated_at"),
    )


def _map_shopify(payload: dict) -> ChannelOrder:
    external_id = _require_id(payload)
    financial = payload.get("financial_status") or "pending"
    if financial == "paid":
        payment = PaymentStatus.PAID
    elif financial in ("refunded", "partially_refunded"):
        payment = PaymentStatus.REFUNDED
    else:
        payment = PaymentStatus.PENDING

    shipping_cost = Decimal("0")
    for line in payload.get("shipping_lines") or []:
        shipping_cost += _money(line.get("price"))

    address = payload.get("shipping_address") or {}
    items = []
    for line in payload.get("line_items") or []:
        if not line.get("sku"):
            raise MalformedPayload(f"Line item {line.get('id')} has no SKU")
        quantity = int(line.get("quantity") or 0)
        unit_price = _money(line.get("price"))
        items.append(
            ChannelLineItem(
                external_item_id=str(line.get("id")),
                sku=line["sku"],
                name=line.get("name") or line.get("title") or "",
                quantity=quantity,
                unit_price=unit_price,
                total_price=unit_price * quantity,
            )
        )
    return ChannelOrder(
        external_order_id=external_id,
        order_number=payload.get("name"),
        payment_status=payment,
        cancelled=bool(payload.get("cancelled_at")),
        currency=payload.get("currency") or "SAR",
        subtotal=_money(payload.get("subtotal_price")),
        shipping_cost=shipping_cost,
        tax_amount=_money(payload.get("total_tax")),
        discount_amount=_money(payload.get("total_discounts")),
        total_amount=_money(payload.get("total_price")),
        shipping_address={
            "first_name": address.get("first_name"),
            "last_name": address.get("last_name"),
            "street1": address.get("address1"),
            "street2": address.get("address2"),
            "city": address.get("city"),
            "state": address.get("province"),
            "postal_code": address.get("zip"),
            "country": address.get("country_code"),
            "phone": address.get("phone"),
        }
        if address
        else {},
        items=items,
        ordered_at=_timestamp(payload.get("created_at")),
        updated_marker=payload.get("updated_at"),
    )


def _map_woocommerce(payload: dict) -> ChannelOrder:
    external_id = _require_id(payload)
    status = payload.get("status") or "pending"
    if status in WOO_PAID_STATUSES:
        payment = PaymentStatus.PAID
    elif status == "refunded":
        payment = PaymentStatus.REFUNDED
    else:
        payment = PaymentStatus.PENDING

    address = payload.get("shipping") or {}
    items = []
    for line in payload.get("line_items") or []:
        if not line.get("sku"):
            raise MalformedPayload(f"Line item {line.get('id')} has no SKU")
        quantity = int(line.get("quantity") or 0)
        total = _money(line.get("total"))
        items.append(
            ChannelLineItem(
                external_item_id=str(line.get("id")),
                sku=line["sku"],
                name=line.get("name") or "",
                quantity=quantity,
                unit_price=_money(line.get("price")),
                total_price=total,
            )
        )
    total = _money(payload.get("total"))
    shipping = _money(payload.get("shipping_total"))
    tax = _money(payload.get("total_tax"))
    discount = _money(payload.get("discount_total"))
    return ChannelOrder(
        external_order_id=external_id,
        order_number=str(payload["number"]) if payload.get("number") else None,
        payment_status=payment,
        cancelled=status == "cancelled",
        currency=payload.get("currency") or "SAR",
        subtotal=total - shipping - tax + discount,
        shipping_cost=shipping,
        tax_amount=tax,
        discount_amount=discount,
        total_amount=total,
        shipping_address={
            "first_name": address.get("first_name"),
            "last_name": address.get("last_name"),
            "street1": address.get("address_1"),
            "street2": address.get("address_2"),
            "city": address.get("city"),
            "state": address.get("state"),
            "postal_code": address.get("postcode"),
            "country": address.get("country"),
            "phone": address.get("phone"),
        }
        if address
        else {},
        items=items,
        ordered_at=_timestamp(payload.get("date_created_gmt") or payload.get("date_created")),
        updated_marker=payload.get("date_modified_gmt") or payload.get("date_modified"),
    )


def map_channel_order(channel_type: ChannelType | str, payload: dict) -> ChannelOrder:
    """
    Map a raw order payload. A flat {id, sku, qty, paid} body is accepted from
    any channel; otherwise the channel's own order shape is expected.
    """
    if not isinstance(payload, dict):
        raise MalformedPayload("Order payload must be a JSON object")
    try:
        if "sku" in payload and "line_items" not in payload:
            return _map_flat(payload)
        if ChannelType(channel_type) == ChannelType.SHOPIFY:
            mapped = _map_shopify(payload)
        else:
            mapped = _map_woocommerce(payload)
    except (ValidationError, KeyError, TypeError, ValueError) as e:
        raise MalformedPayload(f"Cannot map {channel_type} order payload: {e}")
    if not mapped.items:
        raise MalformedPayload(f"Order {mapped.external_order_id} has no line items")
    return mapped


def is_cancellation(event_type: str, mapped: ChannelOrder) -> bool:
    topic = (event_type or "").lower()
    return mapped.cancelled or "cancel" in topic or "delete" in topic


class ChannelClient(ABC):
    """Pages through a channel's order API. Yields raw order payloads."""

    @abstractmethod
    def fetch_orders(self, channel: Channel, updated_since: datetime | None = None) -> AsyncIterator[dict]: ...


class ShopifyClient(ChannelClient):
    def __init__(self, http: httpx.AsyncClient, timeout: float = 20, page_size: int = 250):
        self.http = http
        self.timeout = timeout
        self.page_size = page_size

    async def fetch_orders(self, channel, updated_since=None):
        config = channel.config
        version = config.get("api_version", SHOPIFY_API_VERSION)
        url = f"https://{config['shop_domain']}/admin/api/{version}/orders.json"
        params: dict[str, Any] | None = {"status": "any", "limit": self.page_size}
        if updated_since is not None:
            params["updated_at_min"] = updated_since.isoformat()
        headers = {"X-Shopify-Access-Token": config.get("access_token", "")}
        while url:
            response = await send(
                self.http, "GET", url, service="shopify", params=params, headers=headers, timeout=self.timeout
            )
            for order in response.json().get("orders", []):
                yield order
            # Cursor pagination: the next page URL already carries every query parameter
            url = response.links.get("next", {}).get("url")
            params = None


class WooCommerceClient(ChannelClient):
    def __init__(self, http: httpx.AsyncClient, timeout: float = 20, page_size: int = 100):
        self.http = http
        self.timeout = timeout
        self.page_size = page_size

    async def fetch_orders(self, channel, updated_since=None):
        config = channel.config
        url = f"{config['store_url'].rstrip('/')}/wp-json/wc/v3/orders"
        auth = (config.get("consumer_key", ""), config.get("consumer_secret", ""))
        page = 1
        while True:
            params: dict[str, Any] = {"per_page": self.page_size, "page": page, "orderby": "modified", "order": "asc"}
            if updated_since is not None:
                params["modified_after"] = updated_since.isoformat()
            response = await send(
                self.http, "GET", url, service="woocommerce", params=params, auth=auth, timeout=self.timeout
            )
            orders = response.json()
            for order in orders:
                yield order
            total_pages = int(response.headers.get("X-WP-TotalPages", page))
            if not orders or page >= total_pages:
                break
            page += 1


def build_channel_clients(http: httpx.AsyncClient, timeout: float = 20) -> dict[ChannelType, ChannelClient]:
    return {
        ChannelType.SHOPIFY: ShopifyClient(http, timeout),
        ChannelType.WOOCOMMERCE: WooCommerceClient(http, timeout),
    }

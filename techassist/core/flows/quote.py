"""
Quote Flow.

Price lookup: brand price for the device type, else the type's ``padrao``
default, else PricingUndefined. A loyalty discount applies when the policy
is enabled and the client has been registered for at least the threshold
(inclusive). The quote is persisted before the reply is sent.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from techassist.core.errors import PricingUndefined, TemplateRenderError
from techassist.core.events.classifier import normalize_text
from techassist.core.events.types import Intent
from techassist.core.flows.base import Flow, FlowContext, FlowResult
from techassist.core.records import Client, Device, Quote, ServiceOrder
from techassist.core.tenancy.types import (
    DEFAULT_PRICE_KEY,
    DEFAULT_QUOTE_TEMPLATE,
    TEMPLATE_QUOTE,
    TenantConfig,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

REQUIRED_PLACEHOLDERS = ("VALOR", "CLIENTE", "APARELHO")
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Z_]+)\s*\}\}")

DEVICE_TYPE_ALIASES: dict[str, tuple[str, ...]] = {
    "celular": ("celular", "smartphone", "telefone", "iphone"),
    "tablet": ("tablet", "ipad"),
    "computador": ("computador", "notebook", "laptop", "pc", "desktop", "macbook"),
}

KNOWN_BRANDS = (
    "samsung", "apple", "motorola", "xiaomi", "lg", "asus", "lenovo",
    "dell", "hp", "acer", "positivo", "multilaser", "nokia", "realme",
)

ACRONYM_BRANDS = {"lg", "hp"}

# Product names that imply the brand
BRAND_HINTS = {"iphone": "apple", "ipad": "apple", "macbook": "apple"}

ASK_DEVICE_MESSAGE = (
    "Para montar o orçamento, me diga qual é o aparelho "
    "(celular, tablet ou computador), a marca e o modelo."
)


@dataclass(frozen=True)
class DeviceInfo:
    """Device described in a message."""

    type: str
    brand: str = ""
    model: str = ""


def extract_device(text: str, config: TenantConfig) -> Optional[DeviceInfo]:
    """
    Find device type, brand and model in free text.

    Types come from the tenant pricing table and common aliases; brands
    from the pricing table plus well-known brands. The model is the token
    after the brand (or after the product name for Apple devices).
    """
    original_tokens = re.findall(r"[\w\-]+", text)
    tokens = [normalize_text(t) for t in original_tokens]

    aliases = dict(DEVICE_TYPE_ALIASES)
    for device_type in config.pricing:
        aliases.setdefault(device_type, (device_type,))

    device_type = None
    for name, words in aliases.items():
        if any(word in tokens for word in words):
            device_type = name
            break
    if device_type is None:
        return None

    brands = set(KNOWN_BRANDS)
    for prices in config.pricing.values():
        brands.update(b for b in prices if b != DEFAULT_PRICE_KEY)

    brand = ""
    brand_index = None
    for index, token in enumerate(tokens):
        if token in brands:
            brand, brand_index = token, index
            break
        if token in BRAND_HINTS:
            brand, brand_index = BRAND_HINTS[token], index
            break

    model = ""
    if brand_index is not None:
        rest = original_tokens[brand_index + 1:]
        number = rest[0] if rest and any(ch.isdigit() for ch in rest[0]) else ""
        if tokens[brand_index] in BRAND_HINTS:
            # "iPhone 12" -> model "iPhone 12"
            model = f"{original_tokens[brand_index]} {number}".strip()
        else:
            model = number

    display = brand.upper() if brand in ACRONYM_BRANDS else brand.title()
    return DeviceInfo(type=device_type, brand=display, model=model)


def lookup_price(config: TenantConfig, device_type: str, brand: str) -> Decimal:
    """
    Base price for a device.

    Raises:
        PricingUndefined: If neither a brand nor a default price exists
    """
    prices = config.pricing.get(device_type.lower())
    if prices is not None:
        price = prices.get(brand.lower()) if brand else None
        if price is None:
            price = prices.get(DEFAULT_PRICE_KEY)
        if price is not None:
            return price
    raise PricingUndefined(details={"type": device_type, "brand": brand})


def client_age_days(client: Client, now: datetime) -> int:
    registered_at = client.registered_at
    if registered_at.tzinfo is None:
        registered_at = registered_at.replace(tzinfo=timezone.utc)
    return (now - registered_at).days


def discount_rate_for(config: TenantConfig, client: Client, now: datetime) -> Decimal:
    """Discount rate, or zero when the policy does not apply."""
    policy = config.discount
    if policy.enabled and client_age_days(client, now) >= policy.threshold_days:
        return policy.rate
    return Decimal("0")


def render_template(template: str, values: dict[str, str]) -> str:
    """
    Substitute ``{{KEY}}`` placeholders.

    Raises:
        TemplateRenderError: A required placeholder is missing from the
            template, or the template uses one we cannot fill
    """
    present = set(PLACEHOLDER_PATTERN.findall(template))
    missing = [key for key in REQUIRED_PLACEHOLDERS if key not in present]
    if missing:
        raise TemplateRenderError(details={"missing": missing})

    unknown = sorted(present - set(values))
    if unknown:
        raise TemplateRenderError(details={"unknown": unknown})

    return PLACEHOLDER_PATTERN.sub(lambda m: values[m.group(1)], template)


def compute_quote(
    config: TenantConfig,
    client: Client,
    device: Device,
    now: Optional[datetime] = None,
) -> Quote:
    """
    Compute and render a quote. Deterministic for a given ``now``.

    Raises:
        PricingUndefined: No price for the device
        TemplateRenderError: Tenant template is unusable
    """
    now = now or datetime.now(timezone.utc)
    base_price = lookup_price(config, device.type, device.brand)
    rate = discount_rate_for(config, client, now)
    value = (base_price * (Decimal("1") - rate)).quantize(CENTS, rounding=ROUND_HALF_UP)

    template = config.template(TEMPLATE_QUOTE, DEFAULT_QUOTE_TEMPLATE)
    message = render_template(template, {
        "VALOR": f"{value:.2f}",
        "CLIENTE": client.name,
        "APARELHO": device.label,
    })

    return Quote(
        tenant_id=config.tenant_id,
        client_id=client.id,
        device_id=device.id,
        base_price=base_price,
        discount_rate=rate,
        value=value,
        message=message,
        issued_at=now,
    )


class QuoteFlow(Flow):
    """Computes a repair quote and opens a service order."""

    intent = Intent.QUOTE

    async def run(self, ctx: FlowContext) -> FlowResult:
        client = await self.get_or_create_client(ctx)

        info = extract_device(ctx.event.text, ctx.config)
        if info is None:
            return FlowResult(intent=self.intent, reply=ASK_DEVICE_MESSAGE, status="awaiting_info")

        device = await self.store.get_or_create_device(Device(
            tenant_id=ctx.tenant_id,
            client_id=client.id,
            type=info.type,
            brand=info.brand,
            model=info.model,
        ))

        quote = compute_quote(ctx.config, client, device, now=ctx.event.received_at)

        # Persist before replying
        await self.store.save_quote(quote)
        order = await self.store.create_service_order(ServiceOrder(
            tenant_id=ctx.tenant_id,
            client_id=client.id,
            device_id=device.id,
            quote_id=quote.id,
            problem=ctx.event.text,
            quote_value=quote.value,
        ))

        logger.info(
            f"Quote {quote.id} issued for tenant={ctx.tenant_id}: "
            f"{device.type}/{device.brand or '-'} value={quote.value} "
            f"discount={quote.discount_applied}"
        )

        return FlowResult(
            intent=self.intent,
            reply=quote.message,
            entities={
                "quote_id": quote.id,
                "service_order_id": order.id,
                "device_id": device.id,
            },
        )

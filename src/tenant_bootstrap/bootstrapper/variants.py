"""Product variant input: price, stock, subscription plans and the variant list."""

from typing import Any

from ..models import ComponentValueError, SpecValidationError, SubscriptionPlan
from .components import ComponentCompiler
from .context import BootstrapContext, get_translation

DEFAULT_IDENTIFIER = "default"

# Fields of a fetched variant that are sent back unchanged when the JSON
# variant does not mention them
PASS_THROUGH_FIELDS = ("sku", "name", "isDefault", "externalReference", "attributes")


def price_input(json_price: Any, existing: list[dict[str, Any]] | None = None) -> list[dict[str, Any]]:
    """Price variant entries for a variant.

    A bare number sets the "default" entry, a mapping sets entries per
    identifier. Existing entries are kept and overwritten by identifier.
    """
    if json_price is None and not existing:
        return [{"identifier": DEFAULT_IDENTIFIER, "price": 0}]

    entries = [{"identifier": e["identifier"], "price": e.get("price")} for e in existing or []]
    _merge(entries, json_price, "price")
    return entries


def stock_input(
    json_stock: Any, existing: list[dict[str, Any]] | None = None
) -> list[dict[str, Any]] | None:
    """Stock location entries for a variant, or None for "no stock change"."""
    if json_stock is None and not existing:
        return None

    entries = [
        {"identifier": e["identifier"], "stock": e.get("stock"), "meta": _meta_input(e.get("meta"))}
        for e in existing or []
    ]
    _merge(entries, json_stock, "stock")
    return [
        {"identifier": e["identifier"], "stock": e.get("stock") or 0, "meta": e.get("meta") or []}
        for e in entries
    ]


def _merge(entries: list[dict[str, Any]], json_value: Any, field: str) -> None:
    if json_value is None:
        return
    updates = json_value if isinstance(json_value, dict) else {DEFAULT_IDENTIFIER: json_value}
    by_identifier = {e["identifier"]: e for e in entries}
    for identifier, amount in updates.items():
        entry = by_identifier.get(identifier)
        if entry is None:
            entry = {"identifier": identifier}
            entries.append(entry)
            by_identifier[identifier] = entry
        entry[field] = amount


def _meta_input(meta: Any) -> list[dict[str, Any]]:
    return [{"key": m.get("key"), "value": m.get("value")} for m in meta or []]


# ---------------------------------------------------------------------------
# Subscription plans
# ---------------------------------------------------------------------------


def _find_plan(identifier: str, plans: list[SubscriptionPlan]) -> SubscriptionPlan:
    for plan in plans:
        if plan.identifier == identifier:
            return plan
    raise ComponentValueError(f'Subscription plan "{identifier}" does not exist')


def _pricing_input(pricing: dict[str, Any], plan: SubscriptionPlan) -> dict[str, Any]:
    metered = []
    for mv in pricing.get("meteredVariables") or []:
        mv_id = next(
            (m.get("id") for m in plan.metered_variables if m.get("identifier") == mv.get("identifier")),
            None,
        )
        if not mv_id:
            raise ComponentValueError(f"Cannot find id for metered variable {mv.get('identifier')}")
        metered.append(
            {
                "id": mv_id,
                "tierType": mv.get("tierType"),
                "tiers": [
                    {"threshold": t.get("threshold"), "priceVariants": price_input(t.get("price"))}
                    for t in mv.get("tiers") or []
                ],
            }
        )

    result: dict[str, Any] = {"priceVariants": price_input(pricing.get("price"))}
    if metered:
        result["meteredVariables"] = metered
    return result


def subscription_plans_input(
    json_plans: list[dict[str, Any]], plans: list[SubscriptionPlan]
) -> list[dict[str, Any]]:
    result = []
    for json_plan in json_plans:
        plan = _find_plan(json_plan["identifier"], plans)
        periods = []
        for period in json_plan.get("periods") or []:
            period_id = next((p.get("id") for p in plan.periods if p.get("name") == period.get("name")), None)
            if not period_id:
                raise ComponentValueError(
                    f'Plan "{plan.identifier}" has no period named "{period.get("name")}"'
                )
            entry: dict[str, Any] = {"id": period_id}
            if period.get("initial"):
                entry["initial"] = _pricing_input(period["initial"], plan)
            entry["recurring"] = _pricing_input(period.get("recurring") or {}, plan)
            periods.append(entry)
        result.append({"identifier": plan.identifier, "periods": periods})
    return result


# ---------------------------------------------------------------------------
# Variant list
# ---------------------------------------------------------------------------


def existing_variant_input(variant: dict[str, Any]) -> dict[str, Any]:
    """Input for a fetched variant no JSON variant matches."""
    result = {k: variant[k] for k in PASS_THROUGH_FIELDS if variant.get(k) is not None}
    if variant.get("images"):
        result["images"] = [{"key": image["key"]} for image in variant["images"]]
    if variant.get("priceVariants") is not None:
        result["priceVariants"] = [
            {"identifier": p["identifier"], "price": p.get("price")} for p in variant["priceVariants"]
        ]
    if variant.get("stockLocations") is not None:
        result["stockLocations"] = [
            {"identifier": s["identifier"], "stock": s.get("stock"), "meta": _meta_input(s.get("meta"))}
            for s in variant["stockLocations"]
        ]
    return result


def find_existing_variant(
    existing: list[dict[str, Any]], json_variant: dict[str, Any]
) -> int | None:
    """Index of the fetched variant matching by SKU, then by external reference."""
    for index, variant in enumerate(existing):
        if variant.get("sku") == json_variant.get("sku"):
            return index
    ref = json_variant.get("externalReference")
    if ref:
        for index, variant in enumerate(existing):
            if variant.get("externalReference") == ref:
                return index
    return None


def ensure_single_default(variants: list[dict[str, Any]]) -> None:
    """Exactly one default variant; the first one wins when marks are ambiguous."""
    if not variants:
        return
    if sum(1 for v in variants if v.get("isDefault")) == 1:
        return
    for variant in variants:
        variant["isDefault"] = False
    variants[0]["isDefault"] = True


async def variant_input(
    compiler: ComponentCompiler,
    json_variant: dict[str, Any],
    language: str,
    plans: list[SubscriptionPlan],
    existing: dict[str, Any] | None = None,
) -> dict[str, Any]:
    variant = existing_variant_input(existing) if existing else {}

    variant["sku"] = json_variant["sku"]
    variant["name"] = get_translation(json_variant.get("name"), language)
    variant["isDefault"] = bool(json_variant.get("isDefault"))
    if json_variant.get("externalReference"):
        variant["externalReference"] = json_variant["externalReference"]

    variant["priceVariants"] = price_input(
        json_variant.get("price"), existing.get("priceVariants") if existing else None
    )
    stock = stock_input(json_variant.get("stock"), existing.get("stockLocations") if existing else None)
    if stock is None:
        variant.pop("stockLocations", None)
    else:
        variant["stockLocations"] = stock

    if json_variant.get("attributes"):
        variant["attributes"] = [
            {"attribute": key, "value": value or ""} for key, value in json_variant["attributes"].items()
        ]
    if json_variant.get("subscriptionPlans"):
        variant["subscriptionPlans"] = subscription_plans_input(json_variant["subscriptionPlans"], plans)
    if json_variant.get("images") is not None:
        variant["images"] = await compiler.images_input(json_variant["images"], language)

    return variant


def vat_type_id(context: BootstrapContext, item: dict[str, Any], existing_product: dict[str, Any] | None) -> str:
    name = item.get("vatType")
    if not name and existing_product and existing_product.get("vatType"):
        return existing_product["vatType"]["id"]
    if not name:
        raise SpecValidationError("CANNOT_HANDLE_PRODUCT", "No vat type given for product")
    for vat_type in context.vat_types:
        if vat_type.id and vat_type.name.lower() == str(name).lower():
            return vat_type.id
    raise SpecValidationError("CANNOT_HANDLE_PRODUCT", f'Vat type "{name}" does not exist')


async def product_input(
    context: BootstrapContext,
    compiler: ComponentCompiler,
    item: dict[str, Any],
    language: str,
    existing_product: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """vatTypeId plus the full variant list for a product create/update.

    There is no "add one variant" mutation, so the list always carries the
    remote variants too, with the JSON variants merged in.
    """
    existing = list((existing_product or {}).get("variants") or [])
    variants = [existing_variant_input(v) for v in existing]

    for json_variant in item.get("variants") or []:
        index = find_existing_variant(existing, json_variant)
        variant = await variant_input(
            compiler,
            json_variant,
            language,
            context.subscription_plans,
            existing[index] if index is not None else None,
        )
        if index is None:
            variants.append(variant)
        else:
            variants[index] = variant

    ensure_single_default(variants)
    return {"vatTypeId": vat_type_id(context, item, existing_product), "variants": variants}

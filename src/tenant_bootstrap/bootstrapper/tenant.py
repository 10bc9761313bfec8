"""Tenant state and the non-item bootstrap areas.

Each area creates what the JSON document names and the tenant lacks. Nothing is
updated or deleted here; matching is by code, identifier or name.
"""

import logging
from typing import Any, Callable

from ..client import queries
from ..client.reference_resolver import build_topic_index, normalize_topic_path
from ..models import (
    APIResult,
    AreaMessage,
    AreaUpdate,
    BootstrapError,
    Language,
    PriceVariant,
    Shape,
    StockLocation,
    SubscriptionPlan,
    VatType,
)
from .context import BootstrapContext, get_translation, valid_shape_identifier

logger = logging.getLogger(__name__)

OnUpdate = Callable[[AreaUpdate], None]


def _get(result: APIResult, *path: str) -> Any:
    node: Any = result.data or {}
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _progress(on_update: OnUpdate, done: int, total: int, message: str | None = None) -> None:
    on_update(AreaUpdate(progress=done / total if total else 1, message=message))


def _failed(on_update: OnUpdate, code: str, message: str, result: APIResult) -> None:
    detail = result.errors[0].get("error") if result.errors else "no data returned"
    logger.warning(f"{code}: {message} ({detail})")
    on_update(AreaUpdate(error=AreaMessage(code=code, message=f"{message}: {detail}")))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def fetch_tenant(submit: Callable, identifier: str) -> dict[str, Any]:
    result = await submit(queries.build_get_tenant(identifier))
    tenant = _get(result, "tenant", "get")
    if not tenant or not tenant.get("id"):
        raise BootstrapError(f'Tenant "{identifier}" could not be loaded')
    return tenant


async def load_tenant_state(context: BootstrapContext, tenant: dict[str, Any]) -> None:
    """Fill the context with what the tenant already has."""
    ctx = context
    ctx.languages = [Language.model_validate(lang) for lang in tenant.get("availableLanguages") or []]
    if not ctx.languages:
        ctx.languages = [Language(code=ctx.default_language, is_default=True)]
    ctx.vat_types = [VatType.model_validate(v) for v in tenant.get("vatTypes") or []]

    result = await ctx.call_api(queries.build_get_shapes(ctx.tenant_id))
    ctx.shapes = {
        s["identifier"]: Shape.model_validate(s) for s in _get(result, "shape", "getMany") or []
    }

    result = await ctx.call_api(queries.build_get_price_variants(ctx.tenant_id))
    ctx.price_variants = [PriceVariant.model_validate(p) for p in _get(result, "priceVariant", "getMany") or []]

    result = await ctx.call_api(queries.build_get_stock_locations(ctx.tenant_id))
    ctx.stock_locations = [
        StockLocation.model_validate(s) for s in _get(result, "stockLocation", "getMany") or []
    ]

    result = await ctx.call_api(queries.build_get_subscription_plans(ctx.tenant_id))
    ctx.subscription_plans = [
        SubscriptionPlan.model_validate(p) for p in _get(result, "subscriptionPlan", "getMany") or []
    ]

    await reload_topics(ctx)
    await reload_grids(ctx)

    logger.info(
        f"Tenant {ctx.tenant_identifier or ctx.tenant_id}: {len(ctx.languages)} language(s), "
        f"{len(ctx.shapes)} shape(s), {len(ctx.topics)} topic(s), {len(ctx.grids)} grid(s)"
    )


async def reload_topics(context: BootstrapContext) -> None:
    result = await context.call_api(queries.build_get_topics(context.tenant_id, context.language))
    context.topics = list(_get(result, "topic", "getMany") or [])
    context.topic_index = build_topic_index(context.topics)


async def reload_grids(context: BootstrapContext) -> None:
    result = await context.call_api(queries.build_get_grids(context.tenant_id, context.language))
    context.grids = list(_get(result, "grid", "getMany") or [])


# ---------------------------------------------------------------------------
# Areas
# ---------------------------------------------------------------------------


async def set_languages(context: BootstrapContext, languages: list[dict[str, Any]], on_update: OnUpdate) -> None:
    existing = {lang.code for lang in context.languages}
    for done, lang in enumerate(languages, start=1):
        code = lang.get("code")
        if code and code not in existing:
            name = lang.get("name") or code
            result = await context.call_api(queries.build_add_language(context.tenant_id, code, name))
            if result.errors:
                _failed(on_update, "CANNOT_ADD_LANGUAGE", f'Could not add language "{code}"', result)
            else:
                context.languages.append(Language(code=code, name=name, is_default=False))
                existing.add(code)
        _progress(on_update, done, len(languages), f"Language {code}")


async def set_price_variants(
    context: BootstrapContext, price_variants: list[dict[str, Any]], on_update: OnUpdate
) -> None:
    existing = {p.identifier for p in context.price_variants}
    for done, spec in enumerate(price_variants, start=1):
        identifier = spec.get("identifier")
        if identifier and identifier not in existing:
            payload = {k: spec[k] for k in ("identifier", "name", "currency") if spec.get(k) is not None}
            result = await context.call_api(queries.build_create_price_variant(context.tenant_id, payload))
            created = _get(result, "priceVariant", "create")
            if created:
                context.price_variants.append(PriceVariant.model_validate(created))
                existing.add(identifier)
            else:
                _failed(on_update, "CANNOT_CREATE_PRICE_VARIANT", f'Could not create price variant "{identifier}"', result)
        _progress(on_update, done, len(price_variants), f"Price variant {identifier}")


async def set_stock_locations(
    context: BootstrapContext, stock_locations: list[dict[str, Any]], on_update: OnUpdate
) -> None:
    existing = {s.identifier for s in context.stock_locations}
    for done, spec in enumerate(stock_locations, start=1):
        identifier = spec.get("identifier")
        if identifier and identifier not in existing:
            payload = {k: spec[k] for k in ("identifier", "name") if spec.get(k) is not None}
            result = await context.call_api(queries.build_create_stock_location(context.tenant_id, payload))
            created = _get(result, "stockLocation", "create")
            if created:
                context.stock_locations.append(StockLocation.model_validate(created))
                existing.add(identifier)
            else:
                _failed(
                    on_update, "CANNOT_CREATE_STOCK_LOCATION", f'Could not create stock location "{identifier}"', result
                )
        _progress(on_update, done, len(stock_locations), f"Stock location {identifier}")


async def set_vat_types(context: BootstrapContext, vat_types: list[dict[str, Any]], on_update: OnUpdate) -> None:
    existing = {v.name.lower() for v in context.vat_types}
    for done, spec in enumerate(vat_types, start=1):
        name = spec.get("name") or ""
        if name and name.lower() not in existing:
            payload = {"name": name, "percent": spec.get("percent", 0)}
            result = await context.call_api(queries.build_create_vat_type(context.tenant_id, payload))
            created = _get(result, "vatType", "create")
            if created:
                context.vat_types.append(VatType.model_validate(created))
                existing.add(name.lower())
            else:
                _failed(on_update, "CANNOT_CREATE_VAT_TYPE", f'Could not create vat type "{name}"', result)
        _progress(on_update, done, len(vat_types), f"Vat type {name}")


async def set_shapes(context: BootstrapContext, shapes: list[dict[str, Any]], on_update: OnUpdate) -> None:
    for done, spec in enumerate(shapes, start=1):
        identifier = valid_shape_identifier(spec.get("identifier") or "", on_update)
        if identifier and identifier not in context.shapes:
            payload: dict[str, Any] = {
                "identifier": identifier,
                "name": spec.get("name") or identifier,
                "type": spec.get("type") or "document",
            }
            for key in ("components", "variantComponents"):
                if spec.get(key):
                    payload[key] = spec[key]
            result = await context.call_api(queries.build_create_shape(context.tenant_id, payload))
            created = _get(result, "shape", "create")
            if created:
                context.shapes[identifier] = Shape.model_validate({**payload, **created})
            else:
                _failed(on_update, "CANNOT_CREATE_SHAPE", f'Could not create shape "{identifier}"', result)
        _progress(on_update, done, len(shapes), f"Shape {identifier}")


def _count_topics(topics: list[dict[str, Any]]) -> int:
    return sum(1 + _count_topics(t.get("children") or []) for t in topics)


async def set_topic_maps(context: BootstrapContext, topic_maps: list[dict[str, Any]], on_update: OnUpdate) -> None:
    """Create missing topics, parents before children, then rebuild the topic index."""
    total = _count_topics(topic_maps)
    done = 0
    language = context.language

    async def handle(topic: dict[str, Any], parent_id: str | None, parent_path: str) -> None:
        nonlocal done
        name = get_translation(topic.get("name"), language) or ""
        path = normalize_topic_path(f"{parent_path}/{name}")
        topic_id = context.topic_index.get(path)

        if topic_id is None and name:
            payload: dict[str, Any] = {"name": name}
            if parent_id:
                payload["parentId"] = parent_id
            result = await context.call_api(queries.build_create_topic(context.tenant_id, payload, language))
            created = _get(result, "topic", "create")
            if created:
                topic_id = created["id"]
                context.topics.append(created)
                context.topic_index[path] = topic_id
            else:
                _failed(on_update, "CANNOT_CREATE_TOPIC", f'Could not create topic "{path}"', result)

        done += 1
        _progress(on_update, done, total, f"Topic {path}")
        if topic_id is None:
            return
        for child in topic.get("children") or []:
            await handle(child, topic_id, path)

    for topic in topic_maps:
        await handle(topic, None, "")

    context.topic_index = build_topic_index(context.topics)


async def set_grids(context: BootstrapContext, grids: list[dict[str, Any]], on_update: OnUpdate) -> None:
    language = context.language
    for done, spec in enumerate(grids, start=1):
        name = get_translation(spec.get("name"), language)
        found = any(get_translation(g.get("name"), language) == name for g in context.grids)
        if name and not found:
            result = await context.call_api(queries.build_create_grid(context.tenant_id, name, language))
            created = _get(result, "grid", "create")
            if created:
                context.grids.append(created)
            else:
                _failed(on_update, "CANNOT_CREATE_GRID", f'Could not create grid "{name}"', result)
        _progress(on_update, done, len(grids), f"Grid {name}")

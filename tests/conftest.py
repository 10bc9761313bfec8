"""Shared fixtures: an in-memory PIM that answers the bootstrapper's GraphQL operations."""

import itertools
import re
from typing import Any

import pytest

from tenant_bootstrap.bootstrapper.context import BootstrapContext
from tenant_bootstrap.bootstrapper.events import EventBus
from tenant_bootstrap.client.media_upload import MediaUploader
from tenant_bootstrap.client.reference_resolver import ReferenceResolver
from tenant_bootstrap.client.scheduler import RequestScheduler
from tenant_bootstrap.config import BootstrapOptions, BootstrapSettings
from tenant_bootstrap.models import QueryError, Shape, VatType

OPERATION = re.compile(r"(query|mutation)\s+(\w+)")

ROOT_ID = "root"
TENANT_ID = "tenant-1"

SHAPES: list[dict[str, Any]] = [
    {
        "identifier": "folder",
        "name": "Folder",
        "type": "folder",
        "components": [
            {"id": "title", "type": "singleLine"},
            {"id": "flag", "type": "boolean"},
            {"id": "body", "type": "richText"},
            {"id": "related", "type": "itemRelations"},
            {
                "id": "chunk",
                "type": "contentChunk",
                "config": {
                    "components": [
                        {"id": "text", "type": "singleLine"},
                        {"id": "links", "type": "itemRelations"},
                    ]
                },
            },
            {
                "id": "choice",
                "type": "componentChoice",
                "config": {
                    "choices": [
                        {"id": "text", "type": "singleLine"},
                        {"id": "items", "type": "itemRelations"},
                    ]
                },
            },
        ],
    },
    {
        "identifier": "product",
        "name": "Product",
        "type": "product",
        "components": [{"id": "title", "type": "singleLine"}],
        "variantComponents": [
            {"id": "note", "type": "singleLine"},
            {"id": "related", "type": "itemRelations"},
        ],
    },
]


class FakePIM:
    """Just enough of the PIM API for end-to-end runs.

    `calls` records (operation, variables) in arrival order. Queue exceptions
    in `failures[operation]` to make the next calls of that operation fail.
    """

    def __init__(self, languages: list[dict[str, Any]] | None = None) -> None:
        self.languages = languages or [{"code": "en", "name": "English", "isDefault": True}]
        self.shapes = [dict(s) for s in SHAPES]
        self.items: dict[str, dict[str, Any]] = {
            ROOT_ID: {"id": ROOT_ID, "path": "", "parentId": None, "children": []}
        }
        self.topics: list[dict[str, Any]] = []
        self.grids: list[dict[str, Any]] = []
        self.price_variants = [{"identifier": "default", "name": "Default", "currency": "EUR"}]
        self.stock_locations = [{"identifier": "default", "name": "Default"}]
        self.vat_types = [{"id": "vat-1", "name": "No Tax", "percent": 0}]
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)

    # -- helpers --------------------------------------------------------

    def operations(self, name: str | None = None) -> list[tuple[str, dict[str, Any]]]:
        return [c for c in self.calls if name is None or c[0] == name]

    def by_external_reference(self, ref: str) -> dict[str, Any] | None:
        return next((i for i in self.items.values() if i.get("externalReference") == ref), None)

    def add_item(self, name: str, shape: str = "folder", parent_id: str = ROOT_ID, **extra: Any) -> dict[str, Any]:
        item_id = f"item-{next(self._ids)}"
        shape_type = next(s["type"] for s in self.shapes if s["identifier"] == shape)
        parent = self.items[parent_id]
        item = {
            "id": item_id,
            "name": {"en": name},
            "shape": shape,
            "type": shape_type,
            "parentId": parent_id,
            "path": f"{parent['path']}/{name.lower().replace(' ', '-')}",
            "components": {},
            "variantComponents": {},
            "variants": [],
            "topicIds": [],
            "versions": {},
            **extra,
        }
        self.items[item_id] = item
        return item

    def _result(self, item: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": item["id"],
            "externalReference": item.get("externalReference"),
            "tree": {"parentId": item["parentId"], "path": item["path"]},
        }

    # -- transport ------------------------------------------------------

    async def call_api(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        operation = OPERATION.search(query).group(2)
        variables = variables or {}
        self.calls.append((operation, variables))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)
        handler = getattr(self, f"op_{operation.lower()}", None)
        if handler is None:
            raise QueryError(f"Unknown operation {operation}")
        return handler(variables)

    # -- tenant ---------------------------------------------------------

    def op_get_tenant(self, v):
        default = next(lang["code"] for lang in self.languages if lang.get("isDefault"))
        return {
            "tenant": {
                "get": {
                    "id": TENANT_ID,
                    "rootItemId": ROOT_ID,
                    "defaultLanguage": default,
                    "availableLanguages": self.languages,
                    "vatTypes": self.vat_types,
                }
            }
        }

    def op_get_shapes(self, v):
        return {"shape": {"getMany": self.shapes}}

    def op_get_price_variants(self, v):
        return {"priceVariant": {"getMany": self.price_variants}}

    def op_get_stock_locations(self, v):
        return {"stockLocation": {"getMany": self.stock_locations}}

    def op_get_subscription_plans(self, v):
        return {"subscriptionPlan": {"getMany": []}}

    def op_get_topics(self, v):
        return {"topic": {"getMany": self.topics}}

    def op_get_grids(self, v):
        return {"grid": {"getMany": self.grids}}

    def op_add_language(self, v):
        self.languages.append({**v["input"], "isDefault": False})
        return {"tenant": {"addLanguage": v["input"]}}

    def op_create_price_variant(self, v):
        self.price_variants.append(v["input"])
        return {"priceVariant": {"create": v["input"]}}

    def op_create_stock_location(self, v):
        self.stock_locations.append(v["input"])
        return {"stockLocation": {"create": v["input"]}}

    def op_create_vat_type(self, v):
        created = {"id": f"vat-{next(self._ids)}", "name": v["input"]["name"], "percent": v["input"]["percent"]}
        self.vat_types.append(created)
        return {"vatType": {"create": created}}

    def op_create_shape(self, v):
        created = {k: val for k, val in v["input"].items() if k != "tenantId"}
        self.shapes.append(created)
        return {"shape": {"create": created}}

    def op_create_topic(self, v):
        parent = next((t for t in self.topics if t["id"] == v["input"].get("parentId")), None)
        created = {
            "id": f"topic-{next(self._ids)}",
            "name": v["input"]["name"],
            "parentId": v["input"].get("parentId"),
            "path": f"{parent['path'] if parent else ''}/{v['input']['name'].lower()}",
        }
        self.topics.append(created)
        return {"topic": {"create": created}}

    def op_create_grid(self, v):
        created = {"id": f"grid-{next(self._ids)}", "name": v["input"]["name"]}
        self.grids.append(created)
        return {"grid": {"create": created}}

    # -- items ----------------------------------------------------------

    def op_get_item_by_external_reference(self, v):
        refs = set(v["externalReferences"])
        found = [
            {"id": i["id"], "shape": {"identifier": i["shape"]}, "tree": {"parentId": i["parentId"], "path": i["path"]}}
            for i in self.items.values()
            if i.get("externalReference") in refs
        ]
        return {"item": {"getMany": found}}

    def op_get_item_by_path(self, v):
        item = next((i for i in self.items.values() if i["path"] == v["path"] and i["id"] != ROOT_ID), None)
        if item is None:
            return {"tree": {"getNodeByPath": None}}
        return {
            "tree": {
                "getNodeByPath": {
                    "itemId": item["id"],
                    "parentId": item["parentId"],
                    "item": {"shape": {"identifier": item["shape"]}},
                }
            }
        }

    def op_create_item(self, v):
        data = v["input"]
        item = self.add_item(
            data["name"],
            shape=data["shapeIdentifier"],
            parent_id=data["tree"]["parentId"],
            externalReference=data.get("externalReference"),
            topicIds=data.get("topicIds", []),
            variants=data.get("variants", []),
        )
        item["name"] = {v["language"]: data["name"]}
        return {item["type"]: {"create": self._result(item)}}

    def op_update_item(self, v):
        item = self.items[v["id"]]
        data = v["input"]
        if "name" in data:
            item["name"][v["language"]] = data["name"]
        if data.get("components") == {}:
            item["components"].pop(v["language"], None)
        if "variants" in data:
            item["variants"] = data["variants"]
        if "topicIds" in data:
            item["topicIds"] = data["topicIds"]
        item["versions"][v["language"]] = "draft"
        return {item["type"]: {"update": self._result(item)}}

    def op_update_item_component(self, v):
        item = self.items[v["itemId"]]
        item["components"].setdefault(v["language"], {})[v["input"]["componentId"]] = v["input"]
        item["versions"][v["language"]] = "draft"
        return {"item": {"updateComponent": {"id": item["id"]}}}

    def op_update_variant_component(self, v):
        item = self.items[v["productId"]]
        item["variantComponents"].setdefault(v["sku"], {})[v["input"]["componentId"]] = v["input"]
        return {"product": {"updateVariantComponent": {"id": item["id"]}}}

    def op_move_item(self, v):
        item = self.items[v["itemId"]]
        item["parentId"] = v["input"]["parentId"]
        return {"tree": {"moveNode": {"parentId": item["parentId"], "position": v["input"].get("position")}}}

    def op_publish_item(self, v):
        self.items[v["id"]]["versions"][v["language"]] = "published"
        return {"item": {"publish": {"id": v["id"]}}}

    def op_get_product(self, v):
        item = self.items[v["id"]]
        return {
            "product": {
                "get": {
                    "id": item["id"],
                    "vatType": {"id": "vat-1", "name": "No Tax"},
                    "variants": item["variants"],
                }
            }
        }

    def op_get_item_topics(self, v):
        item = self.items[v["itemId"]]
        return {"item": {"get": {"topics": [{"id": t} for t in item["topicIds"]]}}}

    def op_get_item_version(self, v):
        item = self.items[v["itemId"]]
        label = item["versions"].get(v["language"])
        return {"item": {"get": {"id": item["id"], "version": {"label": label} if label else None}}}

    # -- media ----------------------------------------------------------

    def op_generate_presigned_request(self, v):
        return {
            "fileUpload": {
                "generatePresignedRequest": {
                    "url": "https://uploads.example.com/",
                    "fields": [{"name": "key", "value": f"{TENANT_ID}/{v['fileName']}"}],
                }
            }
        }

    def op_register_image(self, v):
        return {"image": {"registerImage": {"key": v["key"]}}}


@pytest.fixture
def pim() -> FakePIM:
    return FakePIM()


@pytest.fixture
def settings() -> BootstrapSettings:
    return BootstrapSettings(_env_file=None, tenant_identifier="demo", api_url="https://pim.example.com/graphql")


def make_scheduler(transport, **kwargs) -> RequestScheduler:
    return RequestScheduler(transport, tick_interval=0, rate_limit_pause=0, retry_delay=0, **kwargs)


@pytest.fixture
def context(pim: FakePIM) -> BootstrapContext:
    """A loaded-looking context over the fake PIM, for compiler and resolver tests."""
    scheduler = make_scheduler(pim.call_api)
    ctx = BootstrapContext(
        tenant_id=TENANT_ID,
        root_item_id=ROOT_ID,
        default_language="en",
        scheduler=scheduler,
        resolver=ReferenceResolver(scheduler, TENANT_ID),
        uploader=MediaUploader(scheduler, TENANT_ID),
        options=BootstrapOptions(),
        events=EventBus(),
    )
    ctx.shapes = {s["identifier"]: Shape.model_validate(s) for s in SHAPES}
    ctx.vat_types = [VatType(id="vat-1", name="No Tax")]
    yield ctx
    scheduler.kill()

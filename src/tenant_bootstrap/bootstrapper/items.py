"""Item reconciliation: sync a JSON item tree to the tenant.

Two pre-order walks over the same tree:

  Pass 1) Create / update / move
     - resolve identity (external reference, then catalogue path) against the API
     - NEW items are created, EXISTING items updated in place (and moved when
       their parent changed)
     - one base call, then one call per component, then one call per variant
       component; item relations are left as empty placeholders
     - the target language first, then the other languages
  Pass 2) Relations + publish
     - item relations (top level, inside a choice, inside chunks, on variants)
       are resolved from the Reference Map only and sent once per component
     - items are published per language according to the publish policy

Per-item working state (remote id, compiled components, topic ids) lives in a
side table keyed by the node's position in the tree ("0", "0/2", ...); the
input tree itself is never written to.

A failure in Pass 1 skips that item and its subtree only. Pass 2 failures are
reported per component / per publish.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..client import queries
from ..client.reference_resolver import ResolveMode, resolve_topic_ids
from ..models import (
    APIResult,
    AreaMessage,
    AreaUpdate,
    ComponentType,
    ItemVersionState,
    QueryError,
    Shape,
    ShapeComponent,
    SpecValidationError,
)
from .components import UNSET, ComponentCompiler, has_item_relations
from .context import BootstrapContext, get_translation, valid_shape_identifier
from .events import EventName, ItemEventPayload
from .variants import product_input

logger = logging.getLogger(__name__)

OnUpdate = Callable[[AreaUpdate], None]


@dataclass
class ItemWorkState:
    """What the run has learned about one spec item."""

    handle: str
    item_id: str | None = None
    parent_id: str | None = None
    exists: bool = False
    shape: Shape | None = None
    topic_ids: list[str] | None = None
    # language -> compiled components (dict, None for "clear all", or UNSET)
    components: dict[str, Any] = field(default_factory=dict)
    # sku -> language -> compiled variant components
    variant_components: dict[str, dict[str, Any]] = field(default_factory=dict)


def count_items(items: list[dict[str, Any]]) -> int:
    total = 0
    for item in items:
        if not item:
            continue
        total += 1
        total += count_items(item.get("children") or [])
    return total


def _components_of(node: dict[str, Any]) -> Any:
    # A missing key and an explicit null mean different things
    return node["components"] if "components" in node else UNSET


class ItemReconciler:
    """Runs both passes for the `items` area of a spec."""

    def __init__(self, context: BootstrapContext, on_update: OnUpdate | None = None):
        self.context = context
        self.on_update: OnUpdate = on_update or (lambda _u: None)
        self.compiler = ComponentCompiler(context, self.on_update)
        self.state: dict[str, ItemWorkState] = {}
        self.total = 0
        self.finished = 0

    @property
    def language(self) -> str:
        return self.context.language

    def _name(self, item: dict[str, Any], language: str | None = None) -> str | None:
        return get_translation(item.get("name"), language or self.language)

    def _error(self, code: str, message: str, item: dict[str, Any] | None = None) -> None:
        logger.warning(f"{code}: {message}")
        self.on_update(AreaUpdate(error=AreaMessage(code=code, message=message, item=item)))

    def _advance(self, message: str | None = None, count: int = 1) -> None:
        self.finished += count
        self.on_update(AreaUpdate(progress=self.finished / self.total if self.total else 1, message=message))

    async def run(self, items: list[dict[str, Any]]) -> None:
        if not items:
            return

        if not self.context.uploader.ffmpeg_available():
            self.on_update(AreaUpdate(warning=AreaMessage(
                code="FFMPEG_UNAVAILABLE",
                message="ffmpeg is not available. Videos will not be included. "
                "Installation instructions for ffmpeg: https://ffmpeg.org/download.html",
            )))

        # Every item is visited once per pass
        self.total = count_items(items) * 2
        self.finished = 0

        root_id = self.context.root_item_id
        logger.info(f"Items pass 1 (create/update): {self.total // 2} item(s)")
        for index, item in enumerate(items):
            await self.handle_item(item, str(index), index, root_id)

        # Every creatable item is now in the Reference Map
        self.on_update(AreaUpdate(message="Updating item relations..."))
        logger.info("Items pass 2 (relations/publish)")
        for index, item in enumerate(items):
            await self.handle_relations_and_publish(item, str(index))

        self.on_update(AreaUpdate(progress=1))

    # ------------------------------------------------------------------
    # Pass 1
    # ------------------------------------------------------------------

    async def handle_item(self, item: dict[str, Any], handle: str, index: int, parent_id: str | None) -> None:
        if not item:
            return
        item_id = None
        try:
            item_id = await self._resolve_and_apply(item, handle, index, parent_id)
        except SpecValidationError as err:
            self._error(err.code, f'Skipping "{self._name(item)}". {err.message}', item)
        except Exception as err:  # noqa: BLE001
            self._error("CANNOT_HANDLE_ITEM", f'Skipping "{self._name(item)}". {type(err).__name__}: {err}', item)
        finally:
            self._advance(f"Handled {self._name(item)}")

        if not item_id:
            # The subtree is skipped in this pass
            skipped = count_items(item.get("children") or [])
            if skipped:
                self._advance(count=skipped)
            return

        for child_index, child in enumerate(item.get("children") or []):
            await self.handle_item(child, f"{handle}/{child_index}", child_index, item_id)

    async def _resolve_and_apply(
        self, item: dict[str, Any], handle: str, index: int, parent_id: str | None
    ) -> str | None:
        ctx = self.context
        found = await ctx.resolver.resolve(
            external_reference=item.get("externalReference"),
            catalogue_path=item.get("cataloguePath"),
            shape_identifier=item.get("shape"),
            language=self.language,
            mode=ResolveMode.REMOTE,
        )
        state = ItemWorkState(
            handle=handle,
            item_id=found.item_id,
            parent_id=found.parent_id,
            exists=bool(found.item_id),
        )
        self.state[handle] = state

        if item.get("parentExternalReference") or item.get("parentCataloguePath"):
            parent = await ctx.resolver.resolve(
                external_reference=item.get("parentExternalReference"),
                catalogue_path=item.get("parentCataloguePath"),
                language=self.language,
                mode=ResolveMode.REMOTE,
            )
            parent_id = parent.item_id
            if not parent_id:
                parent_id = ctx.fallback_folder_id
                self._error("PARENT_FOLDER_NOT_FOUND", "Cannot find the specified parent folder for item", item)

        parent_id = parent_id or ctx.root_item_id
        item_id = await self.create_or_update(item, state, parent_id, index + 1)

        if item_id:
            ctx.resolver.register(
                item_id,
                parent_id,
                external_reference=item.get("externalReference"),
                catalogue_path=item.get("cataloguePath"),
            )
        return item_id

    async def create_or_update(
        self, item: dict[str, Any], state: ItemWorkState, parent_id: str, position: int
    ) -> str | None:
        ctx = self.context
        shape_identifier = item.get("shape")
        if not shape_identifier:
            raise SpecValidationError(
                "SHAPE_ID_MISSING", f'Missing shape identifier for item "{self._name(item)}"'
            )
        shape = ctx.get_shape(valid_shape_identifier(shape_identifier, self.on_update))
        if shape is None:
            raise SpecValidationError("CANNOT_HANDLE_ITEM", f"Could not locate its shape ({shape_identifier})")
        state.shape = shape

        if "topics" in item:
            state.topic_ids = self._topic_ids(item)

        if state.item_id:
            await self._update_existing(item, state, parent_id, position)
        else:
            await self._create(item, state, parent_id, position)

        if not state.item_id:
            raise SpecValidationError("CANNOT_HANDLE_ITEM", "Could not create or update item")

        for language in self._remaining_languages():
            await self.update_for_language(item, state, language)

        return state.item_id

    def _remaining_languages(self) -> list[str]:
        """Languages after the target one. The default language is only touched first."""
        return [
            lang.code
            for lang in self.context.languages
            if not lang.is_default and lang.code != self.language
        ]

    def _topic_ids(self, item: dict[str, Any]) -> list[str]:
        ids, missing = resolve_topic_ids(item.get("topics") or [], self.context.topic_index)
        for reference in missing:
            self._error("TOPIC_NOT_FOUND", f"Could not find topic {reference!r}", item)
        return ids

    async def _create(self, item: dict[str, Any], state: ItemWorkState, parent_id: str, position: int) -> None:
        ctx = self.context
        shape = state.shape
        language = self.language

        name = self._name(item, language)
        if not name:
            raise SpecValidationError("CANNOT_HANDLE_ITEM", "Item name cannot be empty for the default language")
        if shape.type == "product" and not item.get("variants"):
            raise SpecValidationError("CANNOT_HANDLE_PRODUCT", "No variants defined for product")

        create_input: dict[str, Any] = {
            "name": name,
            "shapeIdentifier": shape.identifier,
            "tenantId": ctx.tenant_id,
            "tree": {"parentId": parent_id, "position": position},
            # Components are sent one by one after the item exists
            "components": {},
        }
        if item.get("externalReference"):
            create_input["externalReference"] = item["externalReference"]
        if state.topic_ids is not None:
            create_input["topicIds"] = state.topic_ids
        if shape.type == "product":
            create_input.update(await product_input(ctx, self.compiler, item, language))

        result = await ctx.call_api(queries.build_create_item(create_input, shape.type, language))
        created = ((result.data or {}).get(shape.type) or {}).get("create")
        if not created or not created.get("id"):
            return

        state.item_id = created["id"]
        state.parent_id = parent_id
        self._register_result(item, created)
        logger.debug(f"Created {shape.type} {state.item_id} ({name})")
        ctx.emit(
            EventName.ITEM_CREATED,
            ItemEventPayload(
                id=state.item_id,
                name=name,
                language=language,
                shape={"type": shape.type, "identifier": shape.identifier},
            ),
        )

        await self.update_for_language(item, state, language)

    async def _update_existing(
        self, item: dict[str, Any], state: ItemWorkState, parent_id: str, position: int
    ) -> None:
        ctx = self.context
        item_id = state.item_id
        options = item.get("_options") or {}

        # Version state has to be read before anything changes it
        if ctx.options.item_publish == "auto":
            await self._cache_versions(item_id)

        if options.get("moveToRoot"):
            if state.parent_id != ctx.root_item_id:
                await ctx.call_api(queries.build_move_item(item_id, ctx.root_item_id))
                state.parent_id = ctx.root_item_id
        elif (
            state.exists
            and state.parent_id != parent_id
            and item_id != parent_id
            # Never an implicit move to root
            and parent_id != ctx.root_item_id
        ):
            await ctx.call_api(queries.build_move_item(item_id, parent_id, position))
            state.parent_id = parent_id

        if state.topic_ids is not None and ctx.options.item_topics == "amend":
            existing = await self._existing_topic_ids(item_id)
            state.topic_ids = list(dict.fromkeys([*existing, *state.topic_ids]))

        await self.update_for_language(item, state, self.language)

    async def update_for_language(self, item: dict[str, Any], state: ItemWorkState, language: str) -> None:
        """Base fields, then each component, then each variant component."""
        ctx = self.context
        shape = state.shape
        item_id = state.item_id
        if shape is None or not item_id:
            raise SpecValidationError(
                "CANNOT_HANDLE_PRODUCT",
                f'Cannot update "{self._name(item, language)}" for language "{language}". Missing shape or item id',
            )

        compiled = await self.compiler.compile_components(_components_of(item), shape.components, language)
        state.components[language] = compiled

        base: dict[str, Any] = {}
        name = self._name(item, language)
        if name:
            base["name"] = name
        if state.topic_ids is not None:
            base["topicIds"] = state.topic_ids
        if shape.type == "product":
            existing_product = await self._get_product(item_id, language)
            base.update(await product_input(ctx, self.compiler, item, language, existing_product))
        if compiled is None:
            base["components"] = {}

        result = await ctx.call_api(queries.build_update_item(item_id, base, shape.type, language))
        updated = ((result.data or {}).get(shape.type) or {}).get("update")
        if updated:
            self._register_result(item, updated)

        if isinstance(compiled, dict):
            for component_input in compiled.values():
                if has_item_relations(component_input):
                    continue
                await ctx.call_api(queries.build_update_item_component(item_id, language, component_input))

        for variant in item.get("variants") or []:
            sku = variant.get("sku")
            variant_compiled = await self.compiler.compile_components(
                _components_of(variant), shape.variant_components, language
            )
            state.variant_components.setdefault(sku, {})[language] = variant_compiled
            if not isinstance(variant_compiled, dict):
                continue
            for component_input in variant_compiled.values():
                if has_item_relations(component_input):
                    continue
                await ctx.call_api(
                    queries.build_update_variant_component(item_id, sku, language, component_input)
                )

        ctx.emit(
            EventName.ITEM_UPDATED,
            ItemEventPayload(
                id=item_id,
                name=name,
                language=language,
                shape={"type": shape.type, "identifier": shape.identifier},
            ),
        )

    def _register_result(self, item: dict[str, Any], result: dict[str, Any]) -> None:
        tree = result.get("tree") or {}
        self.context.resolver.register(
            result["id"],
            external_reference=result.get("externalReference"),
            catalogue_path=item.get("cataloguePath") or tree.get("path"),
        )

    async def _get_product(self, item_id: str, language: str) -> dict[str, Any] | None:
        result = await self.context.call_api(queries.build_get_product(item_id, language))
        return ((result.data or {}).get("product") or {}).get("get")

    async def _existing_topic_ids(self, item_id: str) -> list[str]:
        result = await self.context.call_api(queries.build_get_item_topics(item_id, self.language))
        topics = (((result.data or {}).get("item") or {}).get("get") or {}).get("topics") or []
        return [t["id"] for t in topics if t.get("id")]

    async def _cache_versions(self, item_id: str) -> None:
        versions: dict[str, ItemVersionState] = {}
        for language in self.context.language_codes:
            result = await self.context.call_api(queries.build_get_item_version(item_id, language))
            got = (((result.data or {}).get("item") or {}).get("get") or {})
            label = (got.get("version") or {}).get("label")
            if label is None:
                continue
            versions[language] = (
                ItemVersionState.PUBLISHED if str(label).lower() == "published" else ItemVersionState.DRAFT
            )
        self.context.item_versions[item_id] = versions

    # ------------------------------------------------------------------
    # Pass 2
    # ------------------------------------------------------------------

    async def handle_relations_and_publish(self, item: dict[str, Any], handle: str) -> None:
        if not item:
            return

        self.on_update(AreaUpdate(message=f"Item relations: {self._name(item)}"))
        state = self.state.get(handle)
        if state is not None and state.item_id and state.shape is not None:
            try:
                await self._wire_relations(item, state)
                await self._publish(item, state)
            except Exception as err:  # noqa: BLE001
                self._error(
                    "CANNOT_HANDLE_ITEM_RELATION",
                    f'Could not finish "{self._name(item)}": {type(err).__name__}: {err}',
                    item,
                )

        self._advance()

        for child_index, child in enumerate(item.get("children") or []):
            await self.handle_relations_and_publish(child, f"{handle}/{child_index}")

    async def _wire_relations(self, item: dict[str, Any], state: ItemWorkState) -> None:
        ctx = self.context
        language = self.language
        shape = state.shape

        components = item.get("components")
        if isinstance(components, dict):
            for component_id, value in components.items():
                if value is None:
                    continue
                mutation = await self._relation_input(
                    item, shape.find_component(component_id), component_id, value, state.components.get(language)
                )
                if mutation is None:
                    continue
                try:
                    await self._send(queries.build_update_item_component(state.item_id, language, mutation))
                except Exception as err:  # noqa: BLE001
                    self._error(
                        "CANNOT_HANDLE_ITEM_RELATION",
                        f'Unable to update relation for item id "{state.item_id}" '
                        f"with input {mutation}: {err}",
                        item,
                    )

        for variant in item.get("variants") or []:
            variant_components = variant.get("components")
            if not isinstance(variant_components, dict):
                continue
            sku = variant.get("sku")
            compiled = state.variant_components.get(sku, {}).get(language)
            for component_id, value in variant_components.items():
                if value is None:
                    continue
                mutation = await self._relation_input(
                    item, shape.find_component(component_id, variant=True), component_id, value, compiled
                )
                if mutation is None:
                    continue
                try:
                    await self._send(
                        queries.build_update_variant_component(state.item_id, sku, language, mutation)
                    )
                except Exception as err:  # noqa: BLE001
                    self._error(
                        "CANNOT_HANDLE_ITEM_RELATION",
                        f'Unable to update relation for variant with sku "{sku}" with input {mutation}: {err}',
                        item,
                    )

    async def _send(self, request) -> APIResult:
        result = await self.context.call_api(request)
        if result.errors:
            raise QueryError(str(result.errors[0].get("error")), result.errors)
        return result

    async def _relation_input(
        self,
        item: dict[str, Any],
        definition: ShapeComponent | None,
        component_id: str,
        value: Any,
        compiled: Any,
    ) -> dict[str, Any] | None:
        """Component input with item relations resolved, or None when there are none."""
        if definition is None:
            return None
        kind = definition.kind

        if kind is ComponentType.ITEM_RELATIONS:
            return {"componentId": component_id, "itemRelations": {"itemIds": await self._relation_ids(item, value)}}

        if kind is ComponentType.COMPONENT_CHOICE:
            if not isinstance(value, dict) or not value:
                return None
            selected_id = next(iter(value))
            selected = definition.find_sub_component(selected_id)
            if selected is None or selected.kind is not ComponentType.ITEM_RELATIONS or value[selected_id] is None:
                return None
            return {
                "componentId": component_id,
                "componentChoice": {
                    "componentId": selected_id,
                    "itemRelations": {"itemIds": await self._relation_ids(item, value[selected_id])},
                },
            }

        if kind is ComponentType.CONTENT_CHUNK:
            relation_slots = {s.id for s in definition.sub_components if s.kind is ComponentType.ITEM_RELATIONS}
            existing = compiled.get(component_id) if isinstance(compiled, dict) else None
            if not relation_slots or not has_item_relations(existing):
                return None

            mutation = copy.deepcopy(existing)
            # A chunk with a relation slot always compiles to a non-empty chunk,
            # so the k-th such compiled chunk belongs to the k-th such JSON chunk
            compiled_chunks = [
                chunk
                for chunk in mutation["contentChunk"]["chunks"]
                if any(slot["componentId"] in relation_slots for slot in chunk)
            ]
            json_chunks = [
                chunk for chunk in value or [] if any(slot_id in relation_slots for slot_id in chunk)
            ]
            for chunk, json_chunk in zip(compiled_chunks, json_chunks):
                for slot in chunk:
                    if slot["componentId"] in relation_slots and slot.get("itemRelations") is not None:
                        slot["itemRelations"] = {
                            "itemIds": await self._relation_ids(item, json_chunk.get(slot["componentId"]))
                        }
            return mutation

        return None

    async def _relation_ids(self, item: dict[str, Any], references: Any) -> list[str]:
        ids: list[str] = []
        if not isinstance(references, list):
            return ids
        for reference in references:
            if not isinstance(reference, dict):
                continue
            found = await self.context.resolver.resolve(
                external_reference=reference.get("externalReference"),
                catalogue_path=reference.get("cataloguePath"),
                language=self.language,
                mode=ResolveMode.CACHE,
            )
            if found.item_id:
                ids.append(found.item_id)
            else:
                self._error(
                    "CANNOT_HANDLE_ITEM_RELATION",
                    "Could not determine an ID for related item "
                    f'"{reference.get("externalReference") or reference.get("cataloguePath")}"',
                    item,
                )
        return ids

    async def _publish(self, item: dict[str, Any], state: ItemWorkState) -> None:
        ctx = self.context
        versions = ctx.item_versions.get(state.item_id)
        explicit = (item.get("_options") or {}).get("publish")

        for language in ctx.language_codes:
            if isinstance(explicit, bool):
                should_publish = explicit
            else:
                should_publish = (
                    ctx.options.item_publish == "publish"
                    or versions is None
                    or versions.get(language) == ItemVersionState.PUBLISHED
                )
            if not should_publish:
                continue

            try:
                await self._send(queries.build_publish_item(state.item_id, language))
            except Exception as err:  # noqa: BLE001
                self._error(
                    "CANNOT_PUBLISH_ITEM",
                    f'Could not publish item "{state.item_id}" for language "{language}": {err}',
                    item,
                )
                continue

            ctx.emit(
                EventName.ITEM_PUBLISHED,
                ItemEventPayload(id=state.item_id, name=self._name(item, language), language=language),
            )

"""Resolve external references and catalogue paths to remote item ids."""

from enum import Enum
from typing import Any, Iterable, Protocol

from ..models import APIRequest, APIResult, ItemReference
from . import queries
from .api_client_core import _ClientLogger


class Submitter(Protocol):
    async def submit(self, request: APIRequest) -> APIResult: ...


class ResolveMode(str, Enum):
    """How a lookup that misses the Reference Map is handled.

    REMOTE: ask the API (used while items are still being created).
    CACHE:  the miss is final (used once every creatable item is registered).
    """

    REMOTE = "remote"
    CACHE = "cache"


class ReferenceMap:
    """Run-scoped index of items seen so far, by catalogue path and by external reference."""

    def __init__(self) -> None:
        self.by_path: dict[str, ItemReference] = {}
        self.by_external_reference: dict[str, ItemReference] = {}

    def get(
        self, external_reference: str | None = None, catalogue_path: str | None = None
    ) -> ItemReference | None:
        if external_reference and external_reference in self.by_external_reference:
            return self.by_external_reference[external_reference]
        if catalogue_path and catalogue_path in self.by_path:
            return self.by_path[catalogue_path]
        return None

    def set(
        self,
        item_id: str,
        parent_id: str | None = None,
        external_reference: str | None = None,
        catalogue_path: str | None = None,
    ) -> None:
        for index, key in ((self.by_external_reference, external_reference), (self.by_path, catalogue_path)):
            if not key:
                continue
            existing = index.get(key)
            if parent_id is None and existing is not None and existing.item_id == item_id:
                continue
            index[key] = ItemReference(item_id=item_id, parent_id=parent_id)


class ReferenceResolver:
    """Map first, then (in REMOTE mode) the API."""

    def __init__(self, scheduler: Submitter, tenant_id: str, reference_map: ReferenceMap | None = None):
        self.scheduler = scheduler
        self.tenant_id = tenant_id
        self.reference_map = reference_map or ReferenceMap()
        self._logger = _ClientLogger("RESOLVER")

    def register(
        self,
        item_id: str,
        parent_id: str | None = None,
        external_reference: str | None = None,
        catalogue_path: str | None = None,
    ) -> None:
        self.reference_map.set(item_id, parent_id, external_reference, catalogue_path)

    async def resolve(
        self,
        external_reference: str | None = None,
        catalogue_path: str | None = None,
        shape_identifier: str | None = None,
        language: str = "en",
        mode: ResolveMode = ResolveMode.REMOTE,
    ) -> ItemReference:
        """Return the item's id and parent id, or ItemReference(None) when it does not exist."""
        if not external_reference and not catalogue_path:
            return ItemReference()

        cached = self.reference_map.get(external_reference, catalogue_path)
        if cached is not None:
            return cached

        if mode == ResolveMode.CACHE:
            return ItemReference()

        if external_reference:
            found = await self._query_external_reference(external_reference, shape_identifier, language)
            if found is not None:
                return found

        if catalogue_path:
            found = await self._query_catalogue_path(catalogue_path, shape_identifier, language)
            if found is not None:
                return found

        return ItemReference()

    async def _query_external_reference(
        self, external_reference: str, shape_identifier: str | None, language: str
    ) -> ItemReference | None:
        result = await self.scheduler.submit(
            queries.build_get_item_by_external_reference(self.tenant_id, external_reference, language)
        )
        items = ((result.data or {}).get("item") or {}).get("getMany") or []
        for item in items:
            if shape_identifier and (item.get("shape") or {}).get("identifier") != shape_identifier:
                continue
            tree = item.get("tree") or {}
            return ItemReference(item_id=item.get("id"), parent_id=tree.get("parentId"))
        return None

    async def _query_catalogue_path(
        self, catalogue_path: str, shape_identifier: str | None, language: str
    ) -> ItemReference | None:
        result = await self.scheduler.submit(
            queries.build_get_item_by_path(self.tenant_id, catalogue_path, language)
        )
        node = ((result.data or {}).get("tree") or {}).get("getNodeByPath")
        if not node or not node.get("itemId"):
            return None
        shape = ((node.get("item") or {}).get("shape") or {}).get("identifier")
        if shape_identifier and shape and shape != shape_identifier:
            self._logger.debug(
                f"Path {catalogue_path} holds a '{shape}' item, expected '{shape_identifier}'"
            )
            return None
        return ItemReference(item_id=node["itemId"], parent_id=node.get("parentId"))


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------


def normalize_topic_path(path: str) -> str:
    parts = [p.strip().lower() for p in path.split("/") if p.strip()]
    return "/" + "/".join(parts)


def build_topic_index(topics: Iterable[dict[str, Any]]) -> dict[str, str]:
    """Index a flat topic list by remote path and by name hierarchy."""
    topics = list(topics)
    by_id = {t["id"]: t for t in topics if t.get("id")}
    index: dict[str, str] = {}

    def name_path(topic: dict[str, Any]) -> str:
        names: list[str] = []
        seen: set[str] = set()
        current: dict[str, Any] | None = topic
        while current is not None and current.get("id") not in seen:
            seen.add(current.get("id"))
            names.append(str(current.get("name") or ""))
            current = by_id.get(current.get("parentId"))
        return "/" + "/".join(reversed(names))

    for topic in topics:
        if not topic.get("id"):
            continue
        if topic.get("path"):
            index[normalize_topic_path(topic["path"])] = topic["id"]
        index.setdefault(normalize_topic_path(name_path(topic)), topic["id"])
    return index


def topic_reference_path(reference: Any) -> str | None:
    """The normalized lookup path for one topic entry of a spec item."""
    if isinstance(reference, str):
        return normalize_topic_path(reference)
    if isinstance(reference, dict):
        if reference.get("path"):
            return normalize_topic_path(reference["path"])
        hierarchy = reference.get("hierarchy")
        if isinstance(hierarchy, list) and hierarchy:
            return normalize_topic_path("/".join(str(h) for h in hierarchy))
        if reference.get("name"):
            return normalize_topic_path(str(reference["name"]))
    return None


def resolve_topic_ids(references: Iterable[Any], topic_index: dict[str, str]) -> tuple[list[str], list[Any]]:
    """Return (topic ids, references that did not resolve)."""
    ids: list[str] = []
    missing: list[Any] = []
    for reference in references:
        path = topic_reference_path(reference)
        topic_id = topic_index.get(path) if path else None
        if topic_id is None and path and path.count("/") == 1:
            # A bare name matches the first topic with that leaf name
            leaf = path[1:]
            topic_id = next((tid for p, tid in topic_index.items() if p.rsplit("/", 1)[-1] == leaf), None)
        if topic_id is None:
            missing.append(reference)
        elif topic_id not in ids:
            ids.append(topic_id)
    return ids, missing

"""Tests for reference resolution and topic lookup."""

import pytest

from tenant_bootstrap.client.reference_resolver import (
    ReferenceMap,
    ReferenceResolver,
    ResolveMode,
    build_topic_index,
    normalize_topic_path,
    resolve_topic_ids,
)

from .conftest import TENANT_ID, make_scheduler


@pytest.fixture
def resolver(pim):
    scheduler = make_scheduler(pim.call_api)
    yield ReferenceResolver(scheduler, TENANT_ID)
    scheduler.kill()


class TestReferenceMap:
    def test_external_reference_wins_over_path(self):
        refs = ReferenceMap()
        refs.set("a", "root", catalogue_path="/shop")
        refs.set("b", "root", external_reference="ext-b")
        assert refs.get("ext-b", "/shop").item_id == "b"
        assert refs.get(None, "/shop").item_id == "a"
        assert refs.get("unknown") is None

    def test_registration_without_parent_keeps_known_parent(self):
        refs = ReferenceMap()
        refs.set("a", "folder-1", external_reference="ext-a")
        refs.set("a", None, external_reference="ext-a")
        assert refs.get("ext-a").parent_id == "folder-1"


class TestResolve:
    @pytest.mark.asyncio
    async def test_no_identity_resolves_to_nothing(self, resolver, pim):
        found = await resolver.resolve()
        assert found.item_id is None
        assert pim.calls == []

    @pytest.mark.asyncio
    async def test_map_is_consulted_first(self, resolver, pim):
        resolver.register("item-9", "root", external_reference="ext-9")
        found = await resolver.resolve(external_reference="ext-9", mode=ResolveMode.REMOTE)
        assert found.item_id == "item-9"
        assert pim.calls == []

    @pytest.mark.asyncio
    async def test_cache_mode_miss_does_not_query(self, resolver, pim):
        pim.add_item("Shop", externalReference="ext-shop")
        found = await resolver.resolve(external_reference="ext-shop", mode=ResolveMode.CACHE)
        assert found.item_id is None
        assert pim.calls == []

    @pytest.mark.asyncio
    async def test_remote_by_external_reference(self, resolver, pim):
        shop = pim.add_item("Shop", externalReference="ext-shop")
        found = await resolver.resolve(external_reference="ext-shop", shape_identifier="folder")
        assert found.item_id == shop["id"]
        assert found.parent_id == "root"
        assert [op for op, _ in pim.calls] == ["GET_ITEM_BY_EXTERNAL_REFERENCE"]

    @pytest.mark.asyncio
    async def test_remote_shape_mismatch_falls_back_to_path(self, resolver, pim):
        shop = pim.add_item("Shop", externalReference="ext-shop")
        found = await resolver.resolve(
            external_reference="ext-shop", catalogue_path="/shop", shape_identifier="product"
        )
        assert found.item_id is None
        assert [op for op, _ in pim.calls] == ["GET_ITEM_BY_EXTERNAL_REFERENCE", "GET_ITEM_BY_PATH"]

        found = await resolver.resolve(catalogue_path="/shop", shape_identifier="folder")
        assert found.item_id == shop["id"]

    @pytest.mark.asyncio
    async def test_remote_miss(self, resolver, pim):
        found = await resolver.resolve(external_reference="nope", catalogue_path="/nope")
        assert found.item_id is None
        assert len(pim.calls) == 2


class TestTopics:
    TOPICS = [
        {"id": "t1", "name": "Colour", "path": "/colour", "parentId": None},
        {"id": "t2", "name": "Red", "path": "/colour/red", "parentId": "t1"},
        {"id": "t3", "name": "Size", "path": None, "parentId": None},
    ]

    def test_normalize(self):
        assert normalize_topic_path(" Colour / Red/") == "/colour/red"

    def test_index_by_path_and_name_hierarchy(self):
        index = build_topic_index(self.TOPICS)
        assert index["/colour/red"] == "t2"
        assert index["/size"] == "t3"

    def test_resolve_mixed_references(self):
        index = build_topic_index(self.TOPICS)
        ids, missing = resolve_topic_ids(
            ["/Colour/Red", {"hierarchy": ["Size"]}, {"name": "Red"}, {"path": "/shape"}],
            index,
        )
        # "Red" by leaf name is the same topic as the first reference
        assert ids == ["t2", "t3"]
        assert missing == [{"path": "/shape"}]

"""Tests for the tenant areas, the run orchestrator and its entry points."""

import functools
import json

import pytest

from tenant_bootstrap import bootstrap_worker, server
from tenant_bootstrap.bootstrapper import Bootstrapper, EventName
from tenant_bootstrap.bootstrapper.events import EventBus
from tenant_bootstrap.config import BootstrapOptions, BootstrapSettings
from tenant_bootstrap.models import BootstrapError, QueryError

FULL_SPEC = {
    "languages": [{"code": "en", "name": "English"}, {"code": "de", "name": "Deutsch"}],
    "priceVariants": [{"identifier": "default", "name": "Default"}, {"identifier": "nok", "name": "NOK", "currency": "NOK"}],
    "stockLocations": [{"identifier": "warehouse", "name": "Warehouse"}],
    "vatTypes": [{"name": "No Tax", "percent": 0}, {"name": "Standard", "percent": 25}],
    "shapes": [
        {"identifier": "page", "name": "Page", "type": "document", "components": [{"id": "title", "type": "singleLine"}]}
    ],
    "topicMaps": [{"name": "Colour", "children": [{"name": "Red"}]}],
    "grids": [{"name": "Front page"}],
    "items": [
        {
            "name": {"en": "Home"},
            "shape": "page",
            "externalReference": "home",
            "topics": ["/colour/red"],
            "components": {"title": "Welcome"},
        }
    ],
}


def creates(pim, operation):
    return [v["input"] for _, v in pim.operations(operation)]


class TestAreas:
    @pytest.mark.asyncio
    async def test_full_spec(self, pim, settings):
        bootstrapper = Bootstrapper(FULL_SPEC, settings, client=pim, tick_interval=0)
        done = []
        bootstrapper.once(EventName.DONE, done.append)

        duration = await bootstrapper.start()

        assert creates(pim, "ADD_LANGUAGE") == [{"code": "de", "name": "Deutsch"}]
        assert [p["identifier"] for p in creates(pim, "CREATE_PRICE_VARIANT")] == ["nok"]
        assert [s["identifier"] for s in creates(pim, "CREATE_STOCK_LOCATION")] == ["warehouse"]
        assert [v["name"] for v in creates(pim, "CREATE_VAT_TYPE")] == ["Standard"]
        assert [s["identifier"] for s in creates(pim, "CREATE_SHAPE")] == ["page"]
        assert [g["name"] for g in creates(pim, "CREATE_GRID")] == ["Front page"]

        colour, red = creates(pim, "CREATE_TOPIC")
        assert colour["name"] == "Colour" and "parentId" not in colour
        colour_id = next(t["id"] for t in pim.topics if t["name"] == "Colour")
        red_id = next(t["id"] for t in pim.topics if t["name"] == "Red")
        assert red["parentId"] == colour_id

        home = pim.by_external_reference("home")
        assert home["shape"] == "page"
        assert home["topicIds"] == [red_id]
        assert home["components"]["en"]["title"]["singleLine"] == {"text": "Welcome"}
        # The added language is part of the same run
        assert home["versions"] == {"en": "published", "de": "published"}

        assert done == [{"duration": duration}]
        assert all(s.progress == 1 for s in bootstrapper.status.values())
        assert all(not s.errors for s in bootstrapper.status.values())

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing(self, pim, settings):
        await Bootstrapper(FULL_SPEC, settings, client=pim, tick_interval=0).start()
        first = len(pim.calls)
        mutations_before = [op for op, _ in pim.calls if op.startswith(("CREATE", "ADD"))]

        await Bootstrapper(FULL_SPEC, settings, client=pim, tick_interval=0).start()
        mutations_after = [op for op, _ in pim.calls[first:] if op.startswith(("CREATE", "ADD"))]

        assert mutations_before
        assert mutations_after == []

    @pytest.mark.asyncio
    async def test_shape_identifier_is_clamped(self, pim, settings):
        spec = {"shapes": [{"identifier": "My Shape!", "name": "Mine", "type": "folder"}]}
        bootstrapper = Bootstrapper(spec, settings, client=pim, tick_interval=0)
        await bootstrapper.start()

        assert [s["identifier"] for s in creates(pim, "CREATE_SHAPE")] == ["My-Shape-"]
        assert [w.code for w in bootstrapper.status["shapes"].warnings] == ["SHAPE_IDENTIFIER_TRUNCATED"]

    @pytest.mark.asyncio
    async def test_rejected_create_is_an_area_error(self, pim, settings):
        pim.failures["CREATE_GRID"] = [QueryError("Name taken")]
        errors = []
        bootstrapper = Bootstrapper({"grids": [{"name": "Front page"}]}, settings, client=pim, tick_interval=0)
        bootstrapper.on(EventName.ERROR, errors.append)
        await bootstrapper.start()

        assert [e.code for e in bootstrapper.status["grids"].errors] == ["CANNOT_CREATE_GRID"]
        # Once from the scheduler, once from the area
        assert [e.code for e in errors] == [None, "CANNOT_CREATE_GRID"]
        assert errors[0].will_retry is False


class TestStart:
    @pytest.mark.asyncio
    async def test_requires_tenant_identifier(self, pim):
        settings = BootstrapSettings(_env_file=None, tenant_identifier="")
        with pytest.raises(BootstrapError):
            await Bootstrapper({}, settings, client=pim, tick_interval=0).start()
        assert pim.calls == []

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, pim, settings):
        pim.failures["GET_TENANT"] = [QueryError("Tenant not found")]
        bootstrapper = Bootstrapper({}, settings, client=pim, tick_interval=0)
        with pytest.raises(BootstrapError):
            await bootstrapper.start()
        assert bootstrapper.scheduler.is_killed

    @pytest.mark.asyncio
    async def test_empty_spec_still_finishes_every_area(self, pim, settings):
        finished = []
        bootstrapper = Bootstrapper({}, settings, client=pim, tick_interval=0)
        bootstrapper.on(EventName.ITEMS_DONE, lambda _p: finished.append("items"))
        bootstrapper.on(EventName.SHAPES_DONE, lambda _p: finished.append("shapes"))
        await bootstrapper.start()

        assert finished == ["shapes", "items"]
        snapshot = bootstrapper.status_snapshot()
        assert snapshot["items"] == {"progress": 1, "warnings": [], "errors": []}


class TestServer:
    @pytest.mark.asyncio
    async def test_run_bootstrap_summarizes_the_run(self, pim, settings):
        spec = {"items": [{"name": {"en": "A"}, "shape": "nope"}]}
        result = await server.run_bootstrap("bootstrap-test", spec, settings, BootstrapOptions(), client=pim)

        assert result["success"] is True
        assert result["tenant_identifier"] == "demo"
        assert result["errors"] == 1
        job = server._jobs.pop("bootstrap-test")
        assert [e["code"] for e in job["events"] if e["type"] == "error"] == ["CANNOT_HANDLE_ITEM"]
        assert job["progress"]["items"] == 1

    @pytest.mark.asyncio
    async def test_background_job_lifecycle(self):
        async def work(job_id):
            return {"success": True, "job_id": job_id}

        handle = await server._start_background_job("bootstrap", {"tenant_identifier": "demo"}, work)
        job = server._jobs[handle["job_id"]]
        await job["_task"]

        assert handle["status"] == "started"
        assert job["status"] == "completed"
        assert job["result"] == {"success": True, "job_id": handle["job_id"]}
        assert job["finished_at"] is not None
        server._jobs.pop(handle["job_id"])

    @pytest.mark.asyncio
    async def test_failing_job_is_marked_failed(self):
        async def work(job_id):
            raise BootstrapError("Tenant \"demo\" could not be loaded")

        handle = await server._start_background_job("bootstrap", {}, work)
        job = server._jobs.pop(handle["job_id"])
        await job["_task"]

        assert job["status"] == "failed"
        assert job["error"].startswith("BootstrapError")

    def test_load_spec(self, tmp_path):
        path = tmp_path / "spec.json"
        path.write_text(json.dumps({"items": []}), encoding="utf-8")
        assert server._load_spec(None, str(path)) == {"items": []}
        assert server._load_spec({"grids": []}, None) == {"grids": []}
        with pytest.raises(ValueError):
            server._load_spec(None, None)


class TestWorker:
    def test_parser_defaults(self):
        args = bootstrap_worker.build_parser().parse_args(["--spec-file", "spec.json"])
        assert args.item_topics == "replace"
        assert args.item_publish == "auto"
        assert args.log_level == "silent"

    @pytest.mark.asyncio
    async def test_main_prints_status(self, pim, tmp_path, monkeypatch, capsys):
        spec_file = tmp_path / "spec.json"
        spec_file.write_text(json.dumps({"items": [{"name": {"en": "A"}, "shape": "folder"}]}), encoding="utf-8")
        monkeypatch.setattr(
            bootstrap_worker, "Bootstrapper", functools.partial(Bootstrapper, client=pim, tick_interval=0)
        )

        code = await bootstrap_worker.main(["--spec-file", str(spec_file), "--tenant", "demo"])

        assert code == 0
        status = json.loads(capsys.readouterr().out)
        assert status["items"]["progress"] == 1
        assert len(pim.operations("CREATE_ITEM")) == 1

    @pytest.mark.asyncio
    async def test_main_missing_spec_file(self, tmp_path):
        code = await bootstrap_worker.main(["--spec-file", str(tmp_path / "missing.json"), "--tenant", "demo"])
        assert code == 1


class TestEventBus:
    def test_once_fires_a_single_time(self):
        bus = EventBus()
        seen = []
        bus.once(EventName.DONE, seen.append)
        bus.emit(EventName.DONE, 1)
        bus.emit(EventName.DONE, 2)
        assert seen == [1]

    def test_once_on_two_events_is_tracked_per_event(self):
        bus = EventBus()
        seen = []
        bus.once(EventName.DONE, seen.append)
        bus.once(EventName.ITEMS_DONE, seen.append)

        bus.emit(EventName.DONE, "run")
        bus.emit(EventName.ITEMS_DONE, "items")
        bus.emit(EventName.ITEMS_DONE, "again")

        assert seen == ["run", "items"]

    def test_failing_listener_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(_payload):
            raise ValueError("boom")

        bus.on(EventName.ERROR, broken)
        bus.on(EventName.ERROR, seen.append)
        bus.emit(EventName.ERROR, "e")
        assert seen == ["e"]

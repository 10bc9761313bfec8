"""Bootstrapper - runs every area of a spec against one tenant."""

import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from ..client.api_client_core import PIMClientCore
from ..client.media_upload import MediaUploader
from ..client.reference_resolver import ReferenceResolver
from ..client.scheduler import RequestScheduler
from ..config import BootstrapOptions, BootstrapSettings
from ..models import AreaStatus, AreaUpdate, BootstrapError, BootstrapperError
from . import tenant
from .context import BootstrapContext
from .events import AREA_EVENTS, EventBus, EventName, Listener
from .items import ItemReconciler

logger = logging.getLogger(__name__)

AreaHandler = Callable[[BootstrapContext, list, Callable[[AreaUpdate], None]], Awaitable[None]]

# Run order. Items come last: they need languages, shapes, vat types, topics and grids.
AREAS: list[tuple[str, AreaHandler]] = [
    ("languages", tenant.set_languages),
    ("priceVariants", tenant.set_price_variants),
    ("stockLocations", tenant.set_stock_locations),
    ("vatTypes", tenant.set_vat_types),
    ("shapes", tenant.set_shapes),
    ("topicMaps", tenant.set_topic_maps),
    ("grids", tenant.set_grids),
]


class Bootstrapper:
    """Bootstrap a tenant from a JSON spec.

    Usage:
        bootstrapper = Bootstrapper(spec, settings, BootstrapOptions(item_topics="amend"))
        bootstrapper.on(EventName.ERROR, print)
        duration = await bootstrapper.start()

    `client` may be any object with an async `call_api(query, variables)`; by
    default a PIMClientCore is built from the settings.
    """

    def __init__(
        self,
        spec: dict[str, Any],
        settings: BootstrapSettings | None = None,
        options: BootstrapOptions | None = None,
        client: Any = None,
        http_client: httpx.AsyncClient | None = None,
        tick_interval: float = 0.005,
    ) -> None:
        self.spec = spec or {}
        self.settings = settings or BootstrapSettings()
        self.options = options or BootstrapOptions()
        self.events = EventBus()
        self.status: dict[str, AreaStatus] = {area: AreaStatus() for area in AREA_EVENTS}
        self.context: BootstrapContext | None = None
        self.scheduler: RequestScheduler | None = None

        self._client = client
        self._http_client = http_client
        self._tick_interval = tick_interval

    def on(self, event: EventName | str, fn: Listener) -> None:
        self.events.on(event, fn)

    def once(self, event: EventName | str, fn: Listener) -> None:
        self.events.once(event, fn)

    def off(self, event: EventName | str, fn: Listener) -> None:
        self.events.off(event, fn)

    def status_snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            area: {
                "progress": s.progress,
                "warnings": [w.__dict__ for w in s.warnings],
                "errors": [e.__dict__ for e in s.errors],
            }
            for area, s in self.status.items()
        }

    def _notify_error(self, error: BootstrapperError) -> None:
        self.events.emit(EventName.ERROR, error)

    def _area_updater(self, area: str) -> Callable[[AreaUpdate], None]:
        update_event, _ = AREA_EVENTS[area]

        def on_update(update: AreaUpdate) -> None:
            status = self.status[area]
            if update.progress is not None:
                status.progress = update.progress
            if update.warning is not None:
                status.warnings.append(update.warning)
                self._notify_error(BootstrapperError(
                    error=update.warning.message, type="warning", code=update.warning.code, item=update.warning.item
                ))
            if update.error is not None:
                status.errors.append(update.error)
                self._notify_error(BootstrapperError(
                    error=update.error.message, code=update.error.code, item=update.error.item
                ))
            self.events.emit(update_event, update)
            self.events.emit(EventName.STATUS_UPDATE, self.status)

        return on_update

    def _area_done(self, area: str) -> None:
        self.status[area].progress = 1
        self.events.emit(AREA_EVENTS[area][1])
        self.events.emit(EventName.STATUS_UPDATE, self.status)

    async def start(self) -> float:
        """Run all areas; return the duration in seconds."""
        started = time.monotonic()
        identifier = self.settings.tenant_identifier
        if not identifier:
            raise BootstrapError("No tenant identifier configured (BOOTSTRAP_TENANT_IDENTIFIER)")

        owns_client = self._client is None
        client = self._client or PIMClientCore(self.settings.get_api_config())
        self.scheduler = RequestScheduler(
            client.call_api,
            error_notifier=self._notify_error,
            log_level=self.options.log_level,
            tick_interval=self._tick_interval,
        )
        uploader: MediaUploader | None = None

        try:
            tenant_data = await tenant.fetch_tenant(self.scheduler.submit, identifier)
            tenant_id = tenant_data["id"]
            uploader = MediaUploader(
                self.scheduler, tenant_id, http_client=self._http_client, log_level=self.options.log_level
            )
            self.context = BootstrapContext(
                tenant_id=tenant_id,
                tenant_identifier=identifier,
                root_item_id=tenant_data.get("rootItemId") or "",
                default_language=tenant_data.get("defaultLanguage") or "en",
                scheduler=self.scheduler,
                resolver=ReferenceResolver(self.scheduler, tenant_id),
                uploader=uploader,
                options=self.options,
                events=self.events,
            )
            await tenant.load_tenant_state(self.context, tenant_data)

            for area, handler in AREAS:
                entries = self.spec.get(area)
                if entries:
                    logger.info(f"Bootstrapping {area} ({len(entries)})")
                    await handler(self.context, entries, self._area_updater(area))
                self._area_done(area)

            items = self.spec.get("items")
            if items:
                logger.info(f"Bootstrapping items ({len(items)} top level)")
                await ItemReconciler(self.context, self._area_updater("items")).run(items)
            self._area_done("items")
        finally:
            self.scheduler.kill()
            if uploader is not None:
                await uploader.close()
            if owns_client:
                await client.close()

        duration = time.monotonic() - started
        logger.info(f"Done bootstrapping {identifier} in {duration:.1f}s")
        self.events.emit(EventName.DONE, {"duration": duration})
        return duration

"""Run-scoped state shared by the bootstrap areas."""

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from ..client.media_upload import MediaUploader
from ..client.reference_resolver import ReferenceResolver
from ..client.scheduler import RequestScheduler
from ..config import BootstrapOptions
from ..models import (
    APIRequest,
    APIResult,
    AreaMessage,
    AreaUpdate,
    ItemVersionState,
    Language,
    PriceVariant,
    Shape,
    StockLocation,
    SubscriptionPlan,
    VatType,
)
from .events import EventBus, EventName

MAX_SHAPE_IDENTIFIER_LENGTH = 64

OnUpdate = Callable[[AreaUpdate], None]


def get_translation(value: Any, language: str) -> Any:
    """Pick the value for `language` out of a translatable spec value.

    Plain (non-dict) values are language-agnostic and returned as-is.
    """
    if isinstance(value, dict):
        return value.get(language)
    return value


def valid_shape_identifier(identifier: str, on_update: OnUpdate | None = None) -> str:
    """Clamp a shape identifier to what the API accepts."""
    valid = re.sub(r"[^a-zA-Z0-9_-]+", "-", identifier)
    if len(valid) > MAX_SHAPE_IDENTIFIER_LENGTH:
        valid = valid[:MAX_SHAPE_IDENTIFIER_LENGTH]
    if valid != identifier and on_update is not None:
        on_update(AreaUpdate(warning=AreaMessage(
            code="SHAPE_IDENTIFIER_TRUNCATED",
            message=f'Shape identifier "{identifier}" is used as "{valid}"',
        )))
    return valid


@dataclass
class BootstrapContext:
    tenant_id: str
    root_item_id: str
    default_language: str
    scheduler: RequestScheduler
    resolver: ReferenceResolver
    uploader: MediaUploader
    options: BootstrapOptions = field(default_factory=BootstrapOptions)
    events: EventBus = field(default_factory=EventBus)
    tenant_identifier: str = ""

    languages: list[Language] = field(default_factory=list)
    shapes: dict[str, Shape] = field(default_factory=dict)
    vat_types: list[VatType] = field(default_factory=list)
    price_variants: list[PriceVariant] = field(default_factory=list)
    stock_locations: list[StockLocation] = field(default_factory=list)
    subscription_plans: list[SubscriptionPlan] = field(default_factory=list)
    grids: list[dict[str, Any]] = field(default_factory=list)
    topics: list[dict[str, Any]] = field(default_factory=list)
    topic_index: dict[str, str] = field(default_factory=dict)

    # item id -> language -> version state, captured before an item is changed
    item_versions: dict[str, dict[str, ItemVersionState]] = field(default_factory=dict)

    @property
    def language(self) -> str:
        """The language items are created in: the override, else the tenant default."""
        return self.options.language or self.default_language

    @property
    def language_codes(self) -> list[str]:
        return [lang.code for lang in self.languages] or [self.default_language]

    @property
    def fallback_folder_id(self) -> str:
        return self.options.fallback_folder_id or self.root_item_id

    def get_shape(self, identifier: str | None) -> Shape | None:
        if not identifier:
            return None
        return self.shapes.get(identifier)

    async def call_api(self, request: APIRequest) -> APIResult:
        return await self.scheduler.submit(request)

    def emit(self, event: EventName, payload: Any = None) -> None:
        self.events.emit(event, payload)

"""Data models and exceptions shared across the bootstrapper."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BootstrapError(Exception):
    """Base class for all bootstrapper errors."""


class NetworkError(BootstrapError):
    """Transport-level failure (connection refused, DNS, timeout)."""


class ServerFaultError(NetworkError):
    """Transient fault reported by the API edge (502, socket hang up, reset)."""


class RateLimitError(BootstrapError):
    """HTTP 429 from the API."""

    def __init__(self, retry_after: int | None = None, message: str | None = None):
        self.retry_after = retry_after
        super().__init__(message or "Rate limit exceeded")


class AuthenticationError(BootstrapError):
    """Credentials rejected."""


class QueryError(BootstrapError):
    """The API understood the request and rejected it (GraphQL errors)."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        self.errors = errors or []
        super().__init__(message)


class SpecValidationError(BootstrapError):
    """The JSON spec cannot be applied as written."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ComponentValueError(BootstrapError):
    """A JSON component value cannot be converted to mutation input."""


class UploadError(BootstrapError):
    """A media asset could not be downloaded, converted or uploaded."""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class APIConfiguration(BaseModel):
    """Connection settings for the PIM API."""

    api_url: str
    access_token_id: str = ""
    access_token_secret: SecretStr = SecretStr("")
    static_auth_token: str = ""
    session_id: str = ""
    timeout: float = 60.0


@dataclass
class APIRequest:
    """A GraphQL document plus variables, ready to be queued."""

    query: str
    variables: dict[str, Any] | None = None
    suppress_errors: bool = False


@dataclass
class APIResult:
    data: dict[str, Any] | None = None
    errors: list[dict[str, Any]] | None = None


# ---------------------------------------------------------------------------
# Tenant schema
# ---------------------------------------------------------------------------


class ComponentType(str, Enum):
    """Component kinds the compiler knows how to build input for."""

    BOOLEAN = "boolean"
    SINGLE_LINE = "singleLine"
    RICH_TEXT = "richText"
    NUMERIC = "numeric"
    DATETIME = "datetime"
    LOCATION = "location"
    SELECTION = "selection"
    IMAGES = "images"
    VIDEOS = "videos"
    FILES = "files"
    PROPERTIES_TABLE = "propertiesTable"
    PARAGRAPH_COLLECTION = "paragraphCollection"
    ITEM_RELATIONS = "itemRelations"
    GRID_RELATIONS = "gridRelations"
    COMPONENT_CHOICE = "componentChoice"
    CONTENT_CHUNK = "contentChunk"


class ShapeComponent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: str | None = None
    type: str
    description: str | None = None
    config: dict[str, Any] | None = None

    @property
    def kind(self) -> ComponentType | None:
        """The closed component type, or None for types this package does not handle."""
        try:
            return ComponentType(self.type)
        except ValueError:
            return None

    @property
    def sub_components(self) -> list["ShapeComponent"]:
        """Nested definitions of a componentChoice (choices) or contentChunk (components)."""
        if not self.config:
            return []
        raw = self.config.get("choices") or self.config.get("components") or []
        return [c if isinstance(c, ShapeComponent) else ShapeComponent.model_validate(c) for c in raw]

    def find_sub_component(self, component_id: str) -> "ShapeComponent | None":
        for sub in self.sub_components:
            if sub.id == component_id:
                return sub
        return None


class Shape(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    identifier: str
    name: str | None = None
    type: Literal["folder", "product", "document"] = "document"
    components: list[ShapeComponent] = Field(default_factory=list)
    variant_components: list[ShapeComponent] = Field(default_factory=list, alias="variantComponents")

    def find_component(self, component_id: str, variant: bool = False) -> ShapeComponent | None:
        for c in self.variant_components if variant else self.components:
            if c.id == component_id:
                return c
        return None


class Language(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    name: str | None = None
    is_default: bool = Field(default=False, alias="isDefault")


class VatType(BaseModel):
    id: str | None = None
    name: str
    percent: float = 0


class PriceVariant(BaseModel):
    identifier: str
    name: str | None = None
    currency: str | None = None


class StockLocation(BaseModel):
    identifier: str
    name: str | None = None


class SubscriptionPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    identifier: str
    name: str | None = None
    periods: list[dict[str, Any]] = Field(default_factory=list)
    metered_variables: list[dict[str, Any]] = Field(default_factory=list, alias="meteredVariables")


# ---------------------------------------------------------------------------
# Run-time records
# ---------------------------------------------------------------------------


@dataclass
class ItemReference:
    """Where an item lives remotely. item_id is None when it does not exist (yet)."""

    item_id: str | None = None
    parent_id: str | None = None


@dataclass
class UploadResult:
    key: str
    mime_type: str


class ItemVersionState(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"


@dataclass
class BootstrapperError:
    """Error payload delivered to ERROR listeners."""

    error: str
    will_retry: bool = False
    type: Literal["error", "warning"] = "error"
    code: str | None = None
    item: dict[str, Any] | None = None


@dataclass
class AreaMessage:
    code: str
    message: str
    item: dict[str, Any] | None = None


@dataclass
class AreaUpdate:
    """A progress/message/warning/error report from one bootstrap area."""

    progress: float | None = None
    message: str | None = None
    warning: AreaMessage | None = None
    error: AreaMessage | None = None


@dataclass
class AreaStatus:
    progress: float = 0.0
    warnings: list[AreaMessage] = field(default_factory=list)
    errors: list[AreaMessage] = field(default_factory=list)

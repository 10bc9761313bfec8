"""Component value compiler.

Turns the JSON value of a shape component into the ComponentInput the API
expects. Dispatch is on the closed ComponentType of the shape's definition;
structural types (componentChoice, contentChunk) recurse into their nested
definitions.

Absent and null are different things here:
  - None (JSON null) compiles to an explicit clear, e.g. {"singleLine": None}
  - UNSET means "leave the remote value alone" and is never sent
"""

from datetime import date, datetime, timezone
from typing import Any, Callable

from ..models import (
    AreaMessage,
    AreaUpdate,
    BootstrapperError,
    ComponentType,
    ComponentValueError,
    ShapeComponent,
    UploadError,
)
from .context import BootstrapContext, get_translation
from .events import EventName
from .rich_text import create_rich_text_input


class _Unset:
    """Marker for a component that should not be touched."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def format_datetime(value: Any) -> str:
    """Normalize a spec datetime to UTC `YYYY-MM-DDTHH:MM:SS.mmmZ`.

    Accepts ISO-8601 strings, date/datetime objects and epoch milliseconds.
    Naive values are taken to be UTC.
    """
    if isinstance(value, bool):
        raise ComponentValueError(f"Invalid datetime {value!r}")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as err:
            raise ComponentValueError(f"Invalid datetime {value!r}") from err
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as err:
            raise ComponentValueError(f"Invalid datetime {value!r}") from err
    else:
        raise ComponentValueError(f"Invalid datetime {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.") + f"{parsed.microsecond // 1000:03d}Z"


def has_item_relations(content: Any) -> bool:
    """True when compiled component content carries an item relation to wire later."""
    if not isinstance(content, dict):
        return False
    if content.get("itemRelations") is not None:
        return True
    choice = content.get("componentChoice")
    if isinstance(choice, dict) and has_item_relations(choice):
        return True
    chunk = content.get("contentChunk")
    if isinstance(chunk, dict):
        for slots in chunk.get("chunks") or []:
            if any(has_item_relations(slot) for slot in slots):
                return True
    return False


class ComponentCompiler:
    """Compiles spec component values against shape definitions for one run."""

    def __init__(self, context: BootstrapContext, on_update: Callable[[AreaUpdate], None]):
        self.context = context
        self.on_update = on_update

    async def compile_components(
        self,
        components: Any,
        definitions: list[ShapeComponent],
        language: str,
    ) -> dict[str, dict[str, Any]] | None:
        """Compile an item's (or variant's) components map.

        Returns None to clear every component, UNSET when there is nothing to
        do, otherwise a dict of component id -> ComponentInput.
        """
        if components is None:
            return None
        if not isinstance(components, dict) or not components:
            return UNSET

        by_id = {d.id: d for d in definitions}
        compiled: dict[str, dict[str, Any]] = {}
        for component_id, value in components.items():
            definition = by_id.get(component_id)
            if definition is None:
                continue
            content = await self.compile(definition, value, language)
            if content is not UNSET:
                compiled[component_id] = {"componentId": component_id, **content}
        return compiled

    async def compile(self, definition: ShapeComponent, value: Any, language: str) -> Any:
        kind = definition.kind
        if kind is None:
            return UNSET
        if value is None:
            return {kind.value: None}

        if kind is ComponentType.BOOLEAN:
            return {"boolean": {"value": bool(value)}}

        if kind is ComponentType.SINGLE_LINE:
            text = get_translation(value, language)
            if text is None:
                return UNSET
            return {"singleLine": {"text": text}}

        if kind is ComponentType.RICH_TEXT:
            rich_text = create_rich_text_input(value, language)
            return {"richText": rich_text} if rich_text else UNSET

        if kind is ComponentType.NUMERIC:
            return {"numeric": self._numeric(value)}

        if kind is ComponentType.DATETIME:
            return {"datetime": {"datetime": format_datetime(value)}}

        if kind is ComponentType.LOCATION:
            if not isinstance(value, dict):
                raise ComponentValueError(f"Invalid location {value!r}")
            return {"location": {"lat": value.get("lat"), "long": value.get("long")}}

        if kind is ComponentType.SELECTION:
            keys = [value] if isinstance(value, str) else list(value)
            return {"selection": {"keys": keys}}

        if kind is ComponentType.IMAGES:
            return {"images": await self.images_input(value, language)}

        if kind is ComponentType.VIDEOS:
            return {"videos": await self.videos_input(value, language)}

        if kind is ComponentType.FILES:
            return {"files": await self.files_input(value, language)}

        if kind is ComponentType.PROPERTIES_TABLE:
            return {"propertiesTable": {"sections": self._sections(value, language)}}

        if kind is ComponentType.PARAGRAPH_COLLECTION:
            return {"paragraphCollection": {"paragraphs": await self._paragraphs(value, language)}}

        if kind is ComponentType.ITEM_RELATIONS:
            # Wired once every item exists
            return {"itemRelations": {"itemIds": []}}

        if kind is ComponentType.GRID_RELATIONS:
            return {"gridRelations": {"gridIds": self._grid_ids(value, language)}}

        if kind is ComponentType.COMPONENT_CHOICE:
            return await self._choice(definition, value, language)

        if kind is ComponentType.CONTENT_CHUNK:
            return await self._chunks(definition, value, language)

        return UNSET

    # ------------------------------------------------------------------
    # Scalars and tables
    # ------------------------------------------------------------------

    @staticmethod
    def _numeric(value: Any) -> dict[str, Any]:
        if isinstance(value, bool):
            raise ComponentValueError(f"Invalid numeric {value!r}")
        if isinstance(value, (int, float)):
            return {"number": value, "unit": ""}
        if isinstance(value, dict):
            return {"number": value.get("number"), "unit": value.get("unit") or ""}
        raise ComponentValueError(f"Invalid numeric {value!r}")

    @staticmethod
    def _sections(value: Any, language: str) -> list[dict[str, Any]]:
        sections = []
        for section in value or []:
            properties = section.get("properties") or {}
            sections.append(
                {
                    "title": get_translation(section.get("title"), language),
                    "properties": [
                        {"key": key, "value": get_translation(val, language)}
                        for key, val in properties.items()
                    ],
                }
            )
        return sections

    async def _paragraphs(self, value: Any, language: str) -> list[dict[str, Any]]:
        paragraphs = []
        for paragraph in value or []:
            entry: dict[str, Any] = {"title": {"text": get_translation(paragraph.get("title"), language)}}
            if paragraph.get("body"):
                entry["body"] = create_rich_text_input(paragraph["body"], language)
            if paragraph.get("images"):
                entry["images"] = await self.images_input(paragraph["images"], language)
            if paragraph.get("videos"):
                entry["videos"] = await self.videos_input(paragraph["videos"], language)
            paragraphs.append(entry)
        return paragraphs

    def _grid_ids(self, value: Any, language: str) -> list[str]:
        grid_ids = []
        for ref in value or []:
            name = get_translation(ref.get("name") if isinstance(ref, dict) else ref, language)
            found = next(
                (g for g in self.context.grids if get_translation(g.get("name"), language) == name),
                None,
            )
            if found and found.get("id"):
                grid_ids.append(found["id"])
                continue
            self.context.emit(
                EventName.ERROR,
                BootstrapperError(
                    error=f'Could not find grid with name "{name}". Skipping the grid relation.',
                    code="GRID_NOT_FOUND",
                ),
            )
        return grid_ids

    # ------------------------------------------------------------------
    # Structural
    # ------------------------------------------------------------------

    async def _choice(self, definition: ShapeComponent, value: Any, language: str) -> Any:
        if not isinstance(value, dict) or not value:
            return {"componentChoice": None}

        selected_id = next(iter(value))
        selected = definition.find_sub_component(selected_id)
        if selected is None:
            raise ComponentValueError(
                f'"{selected_id}" is not a choice of component "{definition.id}"'
            )

        content = await self.compile(selected, value[selected_id], language)
        if content is UNSET:
            return UNSET
        return {"componentChoice": {"componentId": selected_id, **content}}

    async def _chunks(self, definition: ShapeComponent, value: Any, language: str) -> dict[str, Any]:
        chunks = []
        for chunk in value or []:
            slots = []
            for slot_id, slot_value in chunk.items():
                slot_definition = definition.find_sub_component(slot_id)
                if slot_definition is None:
                    continue
                content = await self.compile(slot_definition, slot_value, language)
                if content is not UNSET:
                    slots.append({"componentId": slot_id, **content})
            if slots:
                chunks.append(slots)
        return {"contentChunk": {"chunks": chunks}}

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def _upload(self, node: dict[str, Any], label: str):
        source = node.get("src") or ""
        uploader = self.context.uploader
        if not node.get("key") and source.endswith(".m3u8") and not uploader.ffmpeg_available():
            # Reported once per run as FFMPEG_UNAVAILABLE
            return None
        try:
            return await uploader.ensure_uploaded(node)
        except UploadError as err:
            self.on_update(AreaUpdate(warning=AreaMessage(
                code="UPLOAD_FAILED",
                message=f'{err} - Could not upload {label} "{source}"',
            )))
            return None

    async def images_input(self, images: Any, language: str) -> list[dict[str, Any]]:
        result = []
        for image in images or []:
            uploaded = await self._upload(image, "image")
            if uploaded is None:
                continue
            entry: dict[str, Any] = {
                "key": uploaded.key,
                "mimeType": uploaded.mime_type,
                "altText": get_translation(image.get("altText"), language),
            }
            if image.get("caption"):
                entry["caption"] = create_rich_text_input(image["caption"], language)
            result.append(entry)
        return result

    async def videos_input(self, videos: Any, language: str) -> list[dict[str, Any]]:
        result = []
        for video in videos or []:
            uploaded = await self._upload(video, "video")
            if uploaded is None:
                continue
            entry: dict[str, Any] = {
                "key": uploaded.key,
                "title": get_translation(video.get("title"), language),
            }
            if video.get("thumbnails"):
                entry["thumbnails"] = await self.images_input(video["thumbnails"], language)
            result.append(entry)
        return result

    async def files_input(self, files: Any, language: str) -> list[dict[str, Any]]:
        result = []
        for file in files or []:
            uploaded = await self._upload(file, "file")
            if uploaded is None:
                continue
            result.append({"key": uploaded.key, "title": get_translation(file.get("title"), language)})
        return result

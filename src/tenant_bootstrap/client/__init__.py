"""PIM API client: transport, request scheduling, reference resolution and media upload."""

from .api_client_core import PIMClientCore, log_event
from .media_upload import MediaUploader
from .reference_resolver import ReferenceMap, ReferenceResolver, ResolveMode
from .scheduler import RequestScheduler

__all__ = [
    "MediaUploader",
    "PIMClientCore",
    "ReferenceMap",
    "ReferenceResolver",
    "RequestScheduler",
    "ResolveMode",
    "log_event",
]

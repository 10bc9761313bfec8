"""Bootstrap areas, item reconciliation and the run orchestrator."""

from .components import UNSET, ComponentCompiler
from .context import BootstrapContext
from .events import EventBus, EventName, ItemEventPayload
from .items import ItemReconciler
from .orchestrator import Bootstrapper

__all__ = [
    "BootstrapContext",
    "Bootstrapper",
    "ComponentCompiler",
    "EventBus",
    "EventName",
    "ItemEventPayload",
    "ItemReconciler",
    "UNSET",
]

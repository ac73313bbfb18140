from enum import Enum
from typing import Dict


class SyncErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CYCLE_FAILED = "cycle_failed"
    ITEM_FAILED = "item_failed"


def explain_error(kind: SyncErrorKind, context: Dict) -> str:
    templates = {
        SyncErrorKind.CONNECTIVITY: "Inventory system unreachable: {detail}",
        SyncErrorKind.CONCURRENCY_CONFLICT: "A synchronization cycle is already in progress, try again later.",
        SyncErrorKind.CONFIGURATION: "Invalid configuration: {detail}",
        SyncErrorKind.VALIDATION: "Invalid request: {detail}",
        SyncErrorKind.NOT_FOUND: "{detail}",
        SyncErrorKind.CYCLE_FAILED: "Synchronization failed: {detail}",
        SyncErrorKind.ITEM_FAILED: "{failed} of {total} items failed to sync",
    }
    template = templates.get(kind, "{detail}")
    return template.format(**{'detail': '', **context})

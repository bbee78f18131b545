from __future__ import annotations

from typing import Final


JOB_QUEUED: Final = "QUEUED"
JOB_PROCESSING: Final = "PROCESSING"
JOB_COMPLETE: Final = "COMPLETE"
JOB_FAILED: Final = "FAILED"

JOB_STATUSES: Final = (JOB_QUEUED, JOB_PROCESSING, JOB_COMPLETE, JOB_FAILED)
TERMINAL_JOB_STATUSES: Final = frozenset({JOB_COMPLETE, JOB_FAILED})

# QUEUED -> PROCESSING -> {COMPLETE | FAILED}; terminal states never move.
_ALLOWED_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
    JOB_QUEUED: frozenset({JOB_PROCESSING}),
    JOB_PROCESSING: frozenset({JOB_COMPLETE, JOB_FAILED}),
    JOB_COMPLETE: frozenset(),
    JOB_FAILED: frozenset(),
}

CERT_PROCESSING: Final = "PROCESSING"
CERT_EXTRACTED: Final = "EXTRACTED"
CERT_FAILED: Final = "FAILED"

CLIENT_ACTIVE: Final = "ACTIVE"
CLIENT_DISABLED: Final = "DISABLED"

UPLOAD_PENDING: Final = "PENDING"
UPLOAD_UPLOADED: Final = "UPLOADED"
UPLOAD_EXPIRED: Final = "EXPIRED"

DELIVERY_SUCCESS: Final = "SUCCESS"
DELIVERY_FAILED: Final = "FAILED"
DELIVERY_EXHAUSTED: Final = "EXHAUSTED"
TERMINAL_DELIVERY_OUTCOMES: Final = frozenset({DELIVERY_SUCCESS, DELIVERY_EXHAUSTED})

CHANNEL_EXTERNAL_API: Final = "EXTERNAL_API"


def can_transition(current: str, target: str) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_JOB_STATUSES

"""Event types published by the core.

These are the only data a presenter may consume: attachment state, link
state, received values and error messages (plus identity changes, which the
status screen shows as the provisioned network name).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class EventKind(str, Enum):
    """Tag of a :class:`CoreEvent`."""

    ATTACHMENT_STATE = "attachment_state"
    IDENTITY = "identity"
    LINK_STATE = "link_state"
    VALUE_RECEIVED = "value_received"
    ERROR = "error"


@dataclass(frozen=True)
class CoreEvent:
    """One notification from the attachment controller or the link relay."""

    kind: EventKind
    source: str                     # "attachment" or "link"
    state: str = ""                 # enum value for *_STATE events
    value: int | None = None        # 0-255 for VALUE_RECEIVED
    detail: str = ""                # fault reason / error message / network name
    connection: int | None = None   # link connection serial, when relevant
    ts: float = field(default_factory=time.time)

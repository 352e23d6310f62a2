"""Chat message feed with optimistic, event-driven list reconciliation.

The reconciler in :mod:`chat_feed.reconciler` is shared by the server store,
the optimistic client and the subscription feed handler.

Typical usage
-------------
from chat_feed import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .models import ANONYMOUS, Message, MessageEvent, Mutation, message_actions, to_display
from .reconciler import apply_create, apply_delete, apply_event, apply_events, apply_update, dispatch

__all__ = [
    "ANONYMOUS",
    "Message",
    "MessageEvent",
    "Mutation",
    "apply_create",
    "apply_delete",
    "apply_event",
    "apply_events",
    "apply_update",
    "create_app",
    "dispatch",
    "message_actions",
    "to_display",
    "__version__",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

# ---------------------------------------------------------------------
# App factory export
# ---------------------------------------------------------------------
def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`chat_feed.server.create_app`; the import is
    deferred so the reconciler can be used without the web stack loaded.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)

"""
Panel Adapter

Account-level operations over the 3x-ui panel (get/list/create/update/delete
clients), with endpoint fallbacks for differing panel versions.
"""

from app.services.panel.service import (
    AccountState,
    AccountPatch,
    EndpointStrategy,
    PanelAdapter,
    KEEP,
    identity_for,
    get_panel,
    set_panel,
)

__all__ = [
    "AccountState",
    "AccountPatch",
    "EndpointStrategy",
    "PanelAdapter",
    "KEEP",
    "identity_for",
    "get_panel",
    "set_panel",
]

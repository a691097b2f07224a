from .engine import ContactSet, SYSTEM_SEGMENTS, contact_set_for_filters, resolve_contact_set
from .filters import build_where, compile_filters, translate

__all__ = [
    "ContactSet", "SYSTEM_SEGMENTS", "contact_set_for_filters", "resolve_contact_set",
    "build_where", "compile_filters", "translate",
]

"""Service package public API.

Service implementations are imported lazily so that low level modules such
as ``voicequote.services.exceptions`` can be imported by the clients without
pulling in every service (and the clients again) first.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

__all__ = [
    "DocumentRegenerator",
    "ExtractionPipeline",
    "QuoteService",
    "ReviewSessionService",
]

_SERVICE_MODULES = {
    "DocumentRegenerator": "document",
    "ExtractionPipeline": "extraction",
    "QuoteService": "quotes",
    "ReviewSessionService": "review_session",
}


def __getattr__(name: str) -> Any:
    if name not in _SERVICE_MODULES:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module = import_module(f".{_SERVICE_MODULES[name]}", __name__)
    attr = getattr(module, name)
    globals()[name] = attr
    return attr


if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .document import DocumentRegenerator as DocumentRegenerator
    from .extraction import ExtractionPipeline as ExtractionPipeline
    from .quotes import QuoteService as QuoteService
    from .review_session import ReviewSessionService as ReviewSessionService

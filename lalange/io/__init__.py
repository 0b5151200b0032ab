"""Package container reading and document persistence."""

from .container import EpubContainer, image_mime_type
from .storage import Collection, DocumentStore

__all__ = ["Collection", "DocumentStore", "EpubContainer", "image_mime_type"]

"""Text normalization, boilerplate removal, and chunking."""

from .chunking import Chunker, density_windows, ends_sentence
from .cleaners import TextCleaner, remove_license_text
from .normalizer import TextNormalizer, extract_block_text, split_words

__all__ = [
    "Chunker",
    "TextCleaner",
    "TextNormalizer",
    "density_windows",
    "ends_sentence",
    "extract_block_text",
    "remove_license_text",
    "split_words",
]

"""
Text utilities for file names and product identifiers.

Merchants name photos loosely ("FOTO_Camisa-Azul_2.JPG") and write SKUs and
names with Spanish accents. These helpers reduce both sides to comparable
lowercase tokens.
"""

import re
import unicodedata
from typing import Optional

IMAGE_PREFIX_PATTERN = re.compile(r"^(foto_|img_|image_|producto_)", re.IGNORECASE)
SECONDARY_SUFFIX_PATTERN = re.compile(r"^(.+?)(_\d+|_[a-z])$", re.IGNORECASE)
EXTENSION_PATTERN = re.compile(r"\.[^/.]+$")
SEPARATOR_PATTERN = re.compile(r"[_.-]")
NON_WORD_PATTERN = re.compile(r"[^\w\s]")
WHITESPACE_PATTERN = re.compile(r"\s+")


def strip_extension(file_name: str) -> str:
    """Remove the last extension: "mesa.final.jpg" → "mesa.final"."""
    return EXTENSION_PATTERN.sub("", file_name)


def split_secondary_suffix(file_name: str) -> tuple[str, Optional[str]]:
    """
    Split a trailing "_<number>" or "_<letter>" suffix off a file stem.

    Extension and known prefix are removed first, so "foto_mesa_2.jpg"
    gives ("mesa", "_2") and "foto_mesa.jpg" gives ("mesa", None).

    Args:
        file_name: Raw file name as uploaded

    Returns:
        Tuple of (stem without suffix, suffix or None)
    """
    stem = IMAGE_PREFIX_PATTERN.sub("", strip_extension(file_name), count=1)
    match = SECONDARY_SUFFIX_PATTERN.match(stem)
    if match:
        return match.group(1), match.group(2)
    return stem, None


def normalize_file_name(file_name: str) -> str:
    """
    Canonical clean name for an image file.

    Steps, in order: strip extension, strip one known prefix
    (foto_, img_, image_, producto_), strip one trailing _<digits> or
    _<letter> suffix, turn "_", "-" and inner "." into spaces, lowercase, collapse
    whitespace and trim. The result is a fixed point: cleaning it again
    returns it unchanged.

    - "FOTO_Camisa-Azul_2.JPG" → "camisa azul"
    - "img_PROD001.png" → "prod001"
    - "mesa_b.webp" → "mesa"

    Args:
        file_name: Raw file name as uploaded

    Returns:
        Clean name (may be empty, never raises)
    """
    stem, _ = split_secondary_suffix(file_name)
    spaced = SEPARATOR_PATTERN.sub(" ", stem).lower()
    return WHITESPACE_PATTERN.sub(" ", spaced).strip()


def fold_accents(text: str) -> str:
    """
    Remove accent marks: "Decoración" → "Decoracion".

    NFD decomposition separates base chars from accents, which are
    combining characters in Unicode category 'Mn'.
    """
    normalized = unicodedata.normalize("NFD", text)
    return "".join(c for c in normalized if unicodedata.category(c) != "Mn")


def normalize_identifier(text: Optional[str]) -> str:
    """
    Normalize a SKU, product name or clean image name for comparison.

    - "Camisa Azul  Talla-M" → "camisa azul talla m"
    - "Café_Orgánico" → "cafe organico"
    - "PROD-001/A" → "prod 001 a"

    Args:
        text: Raw identifier (None treated as empty)

    Returns:
        Lowercase ASCII-folded tokens separated by single spaces
    """
    if not text:
        return ""

    folded = fold_accents(str(text)).lower()
    folded = SEPARATOR_PATTERN.sub(" ", folded)
    folded = NON_WORD_PATTERN.sub(" ", folded)
    return WHITESPACE_PATTERN.sub(" ", folded).strip()


def normalize_header(header: object) -> str:
    """
    Normalize a sheet column header: "Precio Mayoreo" → "precio_mayoreo".
    """
    text = fold_accents(str(header).replace("\ufeff", "")).strip().lower()
    text = NON_WORD_PATTERN.sub(" ", text)
    return WHITESPACE_PATTERN.sub("_", text.strip())

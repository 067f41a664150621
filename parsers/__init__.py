"""
File parsers module.
"""

from parsers.product_sheet_parser import (
    parse_product_sheet,
    generate_template,
    ProductSheetParseResult,
)

__all__ = [
    "parse_product_sheet",
    "generate_template",
    "ProductSheetParseResult",
]

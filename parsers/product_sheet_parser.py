"""
Product sheet parser for bulk uploads.

Parses the merchant's product template (CSV or Excel) into ProductRow
records. Columns: sku, nombre, precio, precio_mayoreo, descripcion,
categoria, tags. Header matching ignores case, accents and spacing.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from io import BytesIO
from pathlib import Path
from typing import Optional, Union
import structlog

import pandas as pd

from config import settings
from exceptions import ProductSheetParseError
from models.bulk_upload import ProductRow
from utils.text_utils import normalize_header

logger = structlog.get_logger(__name__)

REQUIRED_COLUMNS = ["sku", "nombre", "precio"]
OPTIONAL_COLUMNS = ["precio_mayoreo", "descripcion", "categoria", "tags"]

# English headers and common variations seen in merchant files
COLUMN_ALIASES = {
    "codigo": "sku",
    "name": "nombre",
    "producto": "nombre",
    "price": "precio",
    "precio_menudeo": "precio",
    "wholesale_price": "precio_mayoreo",
    "precio_mayorista": "precio_mayoreo",
    "description": "descripcion",
    "category": "categoria",
    "etiquetas": "tags",
}

DISPLAY_NAMES = {
    "sku": "sku",
    "nombre": "nombre",
    "precio": "precio",
    "precio_mayoreo": "precio_mayoreo",
    "descripcion": "descripcion",
    "categoria": "categoria",
}

SKU_MAX_LENGTH = 50
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 200

TEMPLATE_ROWS = [
    ["PROD001", "Camisa Azul Talla M", "299", "250", "Camisa de algodón 100%", "ropa", "nuevo,algodón"],
    ["PROD002", "Zapatos Negros Talla 42", "899", "750", "Zapatos de cuero genuino", "calzado", "cuero,premium"],
    ["PROD003", "Gorra Deportiva", "199", "150", "Gorra ajustable con logo bordado", "accesorios", "deportivo"],
]


@dataclass
class ParseError:
    """Single validation error from parsing."""
    row: int
    field: str
    error: str


@dataclass
class ProductSheetParseResult:
    """Result of parsing a product sheet."""
    rows: list[ProductRow] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True if no errors occurred."""
        return len(self.errors) == 0

    def raise_for_errors(self) -> None:
        """
        Reject the whole sheet if any row is invalid.

        Raises:
            ProductSheetParseError: With every row error in details
        """
        if self.success:
            return
        raise ProductSheetParseError(
            message=f"Product sheet has {len(self.errors)} invalid entries",
            details={"errors": [
                {"row": e.row, "field": e.field, "error": e.error}
                for e in self.errors
            ]}
        )


def parse_product_sheet(
    file: Union[str, Path, BytesIO, bytes],
    file_name: Optional[str] = None,
    max_rows: Optional[int] = None,
    column_mapping: Optional[dict[str, str]] = None,
) -> ProductSheetParseResult:
    """
    Parse a product sheet.

    Args:
        file: File path, file-like object or raw bytes
        file_name: Original name, used to pick CSV vs Excel
        max_rows: Maximum products (settings default)
        column_mapping: Merchant's own headers, field → header
                        (e.g. {"nombre": "Titulo del articulo"}). Mapped
                        headers win over the built-in aliases.

    Returns:
        ProductSheetParseResult with rows and any row-level errors

    Raises:
        ProductSheetParseError: If the file cannot be read, the column
                                mapping is invalid or required columns
                                are missing
    """
    max_rows = max_rows or settings.max_products_per_upload
    df = _read_sheet(file, file_name)

    df.columns = _resolve_columns(list(df.columns), column_mapping or {})
    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        logger.warning("product_sheet_missing_columns", missing=missing)
        raise ProductSheetParseError(
            message=f"Missing required columns: {', '.join(DISPLAY_NAMES[c] for c in missing)}",
            details={"missing": missing, "found": [str(c) for c in df.columns]}
        )

    result = ProductSheetParseResult()
    seen_skus: dict[str, int] = {}

    for idx, row in df.iterrows():
        row_num = int(idx) + 2  # Sheet row (1-indexed + header)
        values = {col: _cell(row.get(col)) for col in REQUIRED_COLUMNS + OPTIONAL_COLUMNS}

        # Skip empty rows
        if not any(values.values()):
            continue

        row_errors = _validate_row(values, row_num)

        sku = values["sku"]
        if sku and sku in seen_skus:
            row_errors.append(ParseError(
                row=row_num,
                field="sku",
                error=f"SKU {sku} repeated (first seen in row {seen_skus[sku]})"
            ))
        elif sku:
            seen_skus[sku] = row_num

        if row_errors:
            result.errors.extend(row_errors)
            continue

        result.rows.append(ProductRow(
            sku=sku,
            name=values["nombre"],
            price=_to_cents(values["precio"]),
            wholesale_price=_to_cents(values["precio_mayoreo"]) if values["precio_mayoreo"] else None,
            description=values["descripcion"] or None,
            category=values["categoria"] or None,
            tags=_split_tags(values["tags"]),
            row_number=row_num,
        ))

    total_rows = len(result.rows) + len({e.row for e in result.errors})
    if total_rows > max_rows:
        result.errors.insert(0, ParseError(
            row=0,
            field="rows",
            error=f"Maximum {max_rows} products per upload, sheet has {total_rows}"
        ))

    logger.info(
        "product_sheet_parsed",
        rows=len(result.rows),
        error_count=len(result.errors),
        success=result.success
    )

    return result


def generate_template() -> bytes:
    """
    CSV template for merchants, UTF-8 with BOM so Excel keeps accents.
    """
    df = pd.DataFrame(TEMPLATE_ROWS, columns=REQUIRED_COLUMNS + OPTIONAL_COLUMNS)
    return df.to_csv(index=False).encode("utf-8-sig")


# ===================
# HELPERS
# ===================

def _read_sheet(file: Union[str, Path, BytesIO, bytes], file_name: Optional[str]) -> pd.DataFrame:
    """Load CSV or Excel into a DataFrame of strings."""
    if isinstance(file, (str, Path)):
        file_name = file_name or str(file)
        source: Union[str, Path, BytesIO] = file
    elif isinstance(file, bytes):
        source = BytesIO(file)
    else:
        source = file

    is_excel = _looks_like_excel(source, file_name)
    logger.info("parsing_product_sheet", file_name=file_name, format="excel" if is_excel else "csv")

    try:
        if is_excel:
            df = pd.read_excel(source, dtype=str, engine="openpyxl")
        else:
            df = pd.read_csv(source, dtype=str, encoding="utf-8-sig", keep_default_na=False)
    except Exception as e:
        logger.error("product_sheet_read_failed", error=str(e))
        raise ProductSheetParseError(
            message="Failed to read product sheet",
            details={"original_error": str(e)}
        )

    return df.fillna("")


def _looks_like_excel(source: Union[str, Path, BytesIO], file_name: Optional[str]) -> bool:
    if file_name:
        suffix = Path(file_name).suffix.lower()
        if suffix in (".xlsx", ".xlsm", ".xls"):
            return True
        if suffix in (".csv", ".txt"):
            return False

    if isinstance(source, BytesIO):
        position = source.tell()
        magic = source.read(2)
        source.seek(position)
        return magic == b"PK"  # xlsx is a zip archive
    return False


def _canonical_column(column: object) -> str:
    name = normalize_header(column)
    return COLUMN_ALIASES.get(name, name)


def _resolve_columns(columns: list, column_mapping: dict[str, str]) -> list[str]:
    """
    Canonical field name for every sheet column.

    Columns named in column_mapping take that field. Any other column that
    would resolve to a mapped field is ignored, so a field never comes
    from two columns.
    """
    if not column_mapping:
        return [_canonical_column(col) for col in columns]

    known_fields = REQUIRED_COLUMNS + OPTIONAL_COLUMNS
    unknown = sorted(name for name in column_mapping if name not in known_fields)
    if unknown:
        raise ProductSheetParseError(
            message=f"Unknown fields in column mapping: {', '.join(unknown)}",
            details={"unknown_fields": unknown, "fields": known_fields}
        )

    headers = {normalize_header(col) for col in columns}
    not_found = sorted(
        str(header) for header in column_mapping.values()
        if normalize_header(header) not in headers
    )
    if not_found:
        raise ProductSheetParseError(
            message=f"Mapped columns not found in sheet: {', '.join(not_found)}",
            details={"not_found": not_found, "found": [str(c) for c in columns]}
        )

    by_header = {normalize_header(header): name for name, header in column_mapping.items()}
    if len(by_header) < len(column_mapping):
        raise ProductSheetParseError(
            message="A sheet column is mapped to more than one field",
            details={"column_mapping": column_mapping}
        )

    resolved = []
    for col in columns:
        header = normalize_header(col)
        if header in by_header:
            resolved.append(by_header[header])
            continue
        canonical = _canonical_column(col)
        resolved.append(f"ignored_{header}" if canonical in column_mapping else canonical)

    logger.debug("column_mapping_applied", mapping=column_mapping, columns=resolved)
    return resolved


def _cell(value: object) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value).strip()


def _validate_row(values: dict[str, str], row_num: int) -> list[ParseError]:
    errors = []

    sku = values["sku"]
    if not sku:
        errors.append(ParseError(row=row_num, field="sku", error="SKU es requerido"))
    elif len(sku) > SKU_MAX_LENGTH:
        errors.append(ParseError(
            row=row_num,
            field="sku",
            error=f"SKU debe tener máximo {SKU_MAX_LENGTH} caracteres"
        ))

    name = values["nombre"]
    if len(name) < NAME_MIN_LENGTH:
        errors.append(ParseError(
            row=row_num,
            field="nombre",
            error=f"El nombre debe tener al menos {NAME_MIN_LENGTH} caracteres"
        ))
    elif len(name) > NAME_MAX_LENGTH:
        errors.append(ParseError(
            row=row_num,
            field="nombre",
            error=f"El nombre debe tener máximo {NAME_MAX_LENGTH} caracteres"
        ))

    if not values["precio"]:
        errors.append(ParseError(row=row_num, field="precio", error="Precio es requerido"))
    elif not _is_positive_amount(values["precio"]):
        errors.append(ParseError(
            row=row_num,
            field="precio",
            error="El precio debe ser un número positivo"
        ))

    wholesale = values["precio_mayoreo"]
    if wholesale and not _is_positive_amount(wholesale):
        errors.append(ParseError(
            row=row_num,
            field="precio_mayoreo",
            error="El precio de mayoreo debe ser un número positivo"
        ))

    return errors


def _parse_amount(raw: str) -> Optional[Decimal]:
    cleaned = raw.replace("$", "").replace(",", "").replace(" ", "")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def _is_positive_amount(raw: str) -> bool:
    amount = _parse_amount(raw)
    return amount is not None and _cents(amount) > 0


def _cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_cents(raw: str) -> int:
    """'299' → 29900, '1,299.50' → 129950."""
    return _cents(_parse_amount(raw))


def _split_tags(raw: str) -> list[str]:
    return [tag.strip() for tag in raw.split(",") if tag.strip()] if raw else []

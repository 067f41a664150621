"""
Bulk upload API routes.

Multipart endpoints for the product sheet + image upload flow. Row and
image ids are generated per request, so manual overrides cross the API
keyed by SKU and image file name: {"SKU-1": "camisa_azul.jpg",
"SKU-2": "default"}. Sheets with their own headers send column_mapping,
{field: sheet header}, as chosen in the column mapper.
"""

import json
from typing import Optional

from fastapi import APIRouter, File, Form, UploadFile
from fastapi.responses import JSONResponse, Response
import structlog

from config import settings
from exceptions import AppError, ProductSheetParseError, ValidationError
from models.bulk_upload import (
    DEFAULT_IMAGE,
    DuplicatePolicy,
    DuplicateRecord,
    ImageAsset,
    IngestionReport,
    MatchPreview,
    ProductRow,
)
from parsers.product_sheet_parser import generate_template, parse_product_sheet
from services.bulk_upload_service import get_bulk_upload_service
from services.media_service import build_image_asset

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/bulk-upload", tags=["Bulk Upload"])


# ===================
# EXCEPTION HANDLER
# ===================

def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    # Unexpected error
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


# ===================
# HELPERS
# ===================

def _parse_column_mapping(raw: Optional[str]) -> dict[str, str]:
    """JSON {field: sheet header} from the column mapper."""
    if not raw:
        return {}

    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(
            message="column_mapping must be a JSON object",
            code="INVALID_COLUMN_MAPPING",
            details={"reason": str(e)}
        )
    if not isinstance(mapping, dict) or not all(isinstance(v, str) for v in mapping.values()):
        raise ValidationError(
            message="column_mapping must map field names to sheet headers",
            code="INVALID_COLUMN_MAPPING"
        )
    return mapping


async def _read_rows(sheet: UploadFile, column_mapping: Optional[str] = None) -> list[ProductRow]:
    """Read and parse the uploaded sheet; any invalid row rejects it."""
    mapping = _parse_column_mapping(column_mapping)
    content = await sheet.read()
    if not content:
        raise ProductSheetParseError("Uploaded sheet is empty")
    if len(content) > settings.max_sheet_bytes:
        raise ProductSheetParseError(
            f"Sheet is {len(content)} bytes, limit is {settings.max_sheet_bytes}",
            details={"size": len(content)}
        )

    result = parse_product_sheet(content, file_name=sheet.filename, column_mapping=mapping)
    result.raise_for_errors()
    return result.rows


async def _read_images(images: list[UploadFile]) -> list[ImageAsset]:
    """ImageAssets keyed by file name so overrides survive between requests."""
    assets = []
    seen: set[str] = set()
    for upload in images:
        file_name = upload.filename or ""
        if file_name in seen:
            raise ValidationError(
                message=f"Image {file_name} uploaded twice",
                code="DUPLICATE_IMAGE_FILE",
                details={"file_name": file_name}
            )
        seen.add(file_name)
        # Some clients send application/octet-stream; fall back to the extension
        declared = upload.content_type if (upload.content_type or "").startswith("image/") else None
        assets.append(build_image_asset(
            file_name=file_name,
            content=await upload.read(),
            content_type=declared,
            image_id=file_name,
        ))
    return assets


def _resolve_overrides(raw: Optional[str], rows: list[ProductRow]) -> dict[str, str]:
    """{sku: file name | "default"} → {row id: image id | "default"}."""
    if not raw:
        return {}

    try:
        by_sku = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(
            message="overrides must be a JSON object",
            code="INVALID_OVERRIDES",
            details={"reason": str(e)}
        )
    if not isinstance(by_sku, dict):
        raise ValidationError(message="overrides must be a JSON object", code="INVALID_OVERRIDES")

    row_ids = {row.sku: row.id for row in rows}
    unknown = sorted(sku for sku in by_sku if sku not in row_ids)
    if unknown:
        raise ValidationError(
            message="overrides reference SKUs that are not in the sheet",
            code="INVALID_OVERRIDES",
            details={"skus": unknown}
        )

    return {
        row_ids[sku]: DEFAULT_IMAGE if target == DEFAULT_IMAGE else str(target)
        for sku, target in by_sku.items()
    }


# ===================
# ROUTES
# ===================

@router.get("/template")
async def download_template():
    """CSV template with the expected columns and three sample rows."""
    return Response(
        content=generate_template(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="plantilla_productos.csv"'}
    )


@router.post("/preview", response_model=MatchPreview)
async def preview_matches(
    sheet: UploadFile = File(..., description="Product sheet (.csv or .xlsx)"),
    images: list[UploadFile] = File(default=[], description="Product images"),
    overrides: Optional[str] = Form(None, description="JSON {sku: file name | \"default\"}"),
    column_mapping: Optional[str] = Form(None, description="JSON {field: sheet header}")
):
    """
    Match images to products without writing anything.

    Raises:
        422: Invalid sheet, column mapping, images or overrides
    """
    try:
        rows = await _read_rows(sheet, column_mapping)
        assets = await _read_images(images)
        service = get_bulk_upload_service()
        return service.preview(rows, assets, _resolve_overrides(overrides, rows))

    except Exception as e:
        return handle_error(e)


@router.post("/duplicates", response_model=list[DuplicateRecord])
async def find_duplicates(
    sheet: UploadFile = File(..., description="Product sheet (.csv or .xlsx)"),
    merchant_id: str = Form(..., description="Merchant whose catalog is checked"),
    column_mapping: Optional[str] = Form(None, description="JSON {field: sheet header}")
):
    """
    SKUs in the sheet that already exist in the merchant's catalog.

    Raises:
        422: Invalid sheet or column mapping
        503: Duplicate lookup failed
    """
    try:
        rows = await _read_rows(sheet, column_mapping)
        service = get_bulk_upload_service()
        check = await service.check_duplicates(rows, merchant_id)
        return check.duplicates

    except Exception as e:
        return handle_error(e)


@router.post("/ingest", response_model=IngestionReport)
async def ingest_products(
    sheet: UploadFile = File(..., description="Product sheet (.csv or .xlsx)"),
    images: list[UploadFile] = File(default=[], description="Product images"),
    merchant_id: str = Form(..., description="Owner of the new products"),
    overrides: Optional[str] = Form(None, description="JSON {sku: file name | \"default\"}"),
    column_mapping: Optional[str] = Form(None, description="JSON {field: sheet header}"),
    on_duplicates: DuplicatePolicy = Form(DuplicatePolicy.SKIP, description="skip or cancel")
):
    """
    Run a full bulk ingestion.

    Raises:
        409: Duplicates found and on_duplicates=cancel
        422: Invalid sheet, column mapping, images or overrides
        503: Duplicate lookup failed
    """
    try:
        rows = await _read_rows(sheet, column_mapping)
        assets = await _read_images(images)
        service = get_bulk_upload_service()

        return await service.ingest(
            rows,
            assets,
            merchant_id=merchant_id,
            overrides=_resolve_overrides(overrides, rows),
            on_duplicates=on_duplicates,
        )

    except Exception as e:
        return handle_error(e)

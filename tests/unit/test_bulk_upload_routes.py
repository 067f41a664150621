"""
API tests for the bulk upload endpoints.

Run: pytest tests/unit/test_bulk_upload_routes.py -v
"""

import json

import pytest
from unittest.mock import patch

from services.bulk_upload_service import BulkUploadService
from services.catalog_store import SupabaseCatalogStore
from utils.retry import RetryPolicy

from tests.factories import ImageFactory


SHEET = (
    "sku,nombre,precio,precio_mayoreo,descripcion,categoria,tags\n"
    "CAM-AZ-M,Camisa Azul Talla M,299,250,,ropa,\n"
    "ZAP-NEG-42,Zapatos Negros,899,,,calzado,\n"
    "GOR-DEP,Gorra Deportiva,199,,,accesorios,\n"
).encode("utf-8")


def image_file(file_name: str, content_type: str = "image/jpeg") -> tuple:
    return ("images", (file_name, ImageFactory.encode(file_name), content_type))


@pytest.fixture
def service_with_mock_db(test_client_with_mock_db):
    """Route-level service wired to the mocked Supabase client."""
    service = BulkUploadService(
        store=SupabaseCatalogStore(),
        retry_policy=RetryPolicy(max_attempts=1, base_delay=0.0, jitter=0.0),
    )
    with patch("routes.bulk_upload.get_bulk_upload_service", return_value=service):
        yield service


class TestTemplateEndpoint:
    """GET /api/bulk-upload/template"""

    def test_download_template(self, test_client_with_mock_db):
        response = test_client_with_mock_db.get("/api/bulk-upload/template")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.content.startswith(b"\xef\xbb\xbf")
        assert "attachment" in response.headers["content-disposition"]


class TestPreviewEndpoint:
    """POST /api/bulk-upload/preview"""

    def test_preview_matches(self, test_client_with_mock_db, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/preview",
            files=[
                ("sheet", ("productos.csv", SHEET, "text/csv")),
                image_file("camisa_azul.jpg"),
                image_file("gorra deportiva.webp", "image/webp"),
            ],
        )

        assert response.status_code == 200
        body = response.json()
        assert body["stats"]["matched"] == 2
        assert body["stats"]["unmatched"] == 1
        assert body["results"][0]["image_id"] == "camisa_azul.jpg"

    def test_overrides_by_sku_and_file_name(self, test_client_with_mock_db, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/preview",
            files=[
                ("sheet", ("productos.csv", SHEET, "text/csv")),
                image_file("camisa_azul.jpg"),
            ],
            data={"overrides": json.dumps({"ZAP-NEG-42": "camisa_azul.jpg", "GOR-DEP": "default"})},
        )

        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["matched"] == 1
        assert stats["default"] == 1
        assert response.json()["results"][0]["method"] == "manual"

    def test_override_to_secondary_image(self, test_client_with_mock_db, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/preview",
            files=[
                ("sheet", ("productos.csv", SHEET, "text/csv")),
                image_file("camisa_azul.jpg"),
                image_file("camisa_azul_2.jpg"),
            ],
            data={"overrides": json.dumps({"CAM-AZ-M": "camisa_azul_2.jpg"})},
        )

        assert response.status_code == 200
        by_image = {r["image_id"]: r for r in response.json()["results"]}
        assert by_image["camisa_azul_2.jpg"]["product_row"]["sku"] == "CAM-AZ-M"
        assert by_image["camisa_azul_2.jpg"]["method"] == "manual"
        assert by_image["camisa_azul.jpg"]["secondary_image_ids"] == []

    def test_column_mapping_for_custom_headers(self, test_client_with_mock_db, service_with_mock_db):
        sheet = (
            "Referencia,Articulo,Importe\n"
            "CAM-AZ-M,Camisa Azul Talla M,299\n"
        ).encode("utf-8")
        mapping = {"sku": "Referencia", "nombre": "Articulo", "precio": "Importe"}

        response = test_client_with_mock_db.post(
            "/api/bulk-upload/preview",
            files=[
                ("sheet", ("inventario.csv", sheet, "text/csv")),
                image_file("camisa_azul.jpg"),
            ],
            data={"column_mapping": json.dumps(mapping)},
        )

        assert response.status_code == 200
        assert response.json()["stats"]["matched"] == 1
        assert response.json()["results"][0]["product_row"]["sku"] == "CAM-AZ-M"

    def test_invalid_column_mapping_returns_422(self, test_client_with_mock_db, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/preview",
            files=[("sheet", ("productos.csv", SHEET, "text/csv"))],
            data={"column_mapping": "[1, 2]"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_COLUMN_MAPPING"

    def test_invalid_sheet_returns_422(self, test_client_with_mock_db, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/preview",
            files=[("sheet", ("productos.csv", b"sku,nombre\nA-1,Camisa\n", "text/csv"))],
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "PRODUCT_SHEET_PARSE_ERROR"

    def test_unknown_override_sku_returns_422(self, test_client_with_mock_db, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/preview",
            files=[("sheet", ("productos.csv", SHEET, "text/csv"))],
            data={"overrides": json.dumps({"NO-EXISTE": "default"})},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_OVERRIDES"


class TestDuplicatesEndpoint:
    """POST /api/bulk-upload/duplicates"""

    def test_lists_existing_skus(self, test_client_with_mock_db, mock_supabase, service_with_mock_db):
        mock_supabase.set_table_data("products", [
            {"sku": "GOR-DEP", "name": "Gorra vieja", "user_id": "m-1"},
        ])

        response = test_client_with_mock_db.post(
            "/api/bulk-upload/duplicates",
            files=[("sheet", ("productos.csv", SHEET, "text/csv"))],
            data={"merchant_id": "m-1"},
        )

        assert response.status_code == 200
        assert response.json() == [
            {"sku": "GOR-DEP", "exists_in_backend": True, "conflicting_name": "Gorra vieja"}
        ]

    def test_lookup_failure_returns_503(self, test_client_with_mock_db, mock_supabase, service_with_mock_db):
        mock_supabase.table("products").error = RuntimeError("permission denied")

        response = test_client_with_mock_db.post(
            "/api/bulk-upload/duplicates",
            files=[("sheet", ("productos.csv", SHEET, "text/csv"))],
            data={"merchant_id": "m-1"},
        )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "DUPLICATE_LOOKUP_FAILED"


class TestIngestEndpoint:
    """POST /api/bulk-upload/ingest"""

    def test_ingest_writes_products(self, test_client_with_mock_db, mock_supabase, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/ingest",
            files=[
                ("sheet", ("productos.csv", SHEET, "text/csv")),
                image_file("camisa_azul.jpg"),
                image_file("IMG_zapatos-negros.png", "application/octet-stream"),
            ],
            data={"merchant_id": "m-1", "overrides": json.dumps({"GOR-DEP": "default"})},
        )

        assert response.status_code == 200
        report = response.json()
        assert report["uploaded"] == 3
        assert report["failed"] == 0
        inserted = mock_supabase.table("products").inserted
        assert [r["sku"] for r in inserted[0]] == ["CAM-AZ-M", "ZAP-NEG-42", "GOR-DEP"]
        assert len(mock_supabase.storage.from_("product-images").uploads) == 2

    def test_cancel_on_duplicates_returns_409(self, test_client_with_mock_db, mock_supabase, service_with_mock_db):
        mock_supabase.set_table_data("products", [
            {"sku": "CAM-AZ-M", "name": "Camisa", "user_id": "m-1"},
        ])

        response = test_client_with_mock_db.post(
            "/api/bulk-upload/ingest",
            files=[("sheet", ("productos.csv", SHEET, "text/csv"))],
            data={"merchant_id": "m-1", "on_duplicates": "cancel"},
        )

        assert response.status_code == 409
        assert response.json()["error"]["details"]["duplicate_skus"] == ["CAM-AZ-M"]
        assert mock_supabase.table("products").inserted == []

    def test_duplicate_file_names_rejected(self, test_client_with_mock_db, service_with_mock_db):
        response = test_client_with_mock_db.post(
            "/api/bulk-upload/ingest",
            files=[
                ("sheet", ("productos.csv", SHEET, "text/csv")),
                image_file("camisa_azul.jpg"),
                image_file("camisa_azul.jpg"),
            ],
            data={"merchant_id": "m-1"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "DUPLICATE_IMAGE_FILE"

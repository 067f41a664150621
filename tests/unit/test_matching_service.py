"""
Unit tests for image ↔ product matching.

Run: pytest tests/unit/test_matching_service.py -v
"""

import pytest

from services.matching_service import (
    CANDIDATES_PER_IMAGE,
    ManualOverrides,
    group_images,
    match,
    match_images,
    match_stats,
    resolve_assignments,
    score_candidate,
    similarity,
)
from models.bulk_upload import AssignmentStatus, MatchMethod
from exceptions import ValidationError

from tests.factories import ImageFactory, ProductRowFactory


# ===================
# SIMILARITY
# ===================

class TestSimilarity:
    """Tests for similarity()"""

    def test_one_substitution(self):
        assert similarity("camisa azul", "camiza azul") == pytest.approx(0.909, abs=0.001)

    def test_no_shared_characters(self):
        assert similarity("mesa", "gorro") == 0.0

    def test_identical_strings(self):
        assert similarity("mesa roble", "mesa roble") == 1.0

    def test_single_characters_without_equality(self):
        assert similarity("a", "b") == 0.0

    def test_empty_string_never_matches(self):
        assert similarity("", "") == 0.0
        assert similarity("mesa", "") == 0.0


# ===================
# SCORING
# ===================

class TestScoreCandidate:
    """Tests for score_candidate()"""

    def test_exact_match_on_sku(self):
        row = ProductRowFactory.create(sku="PROD001", name="Silla Plegable")

        candidate = score_candidate("prod001", row, 0)

        assert candidate.method == MatchMethod.EXACT
        assert candidate.score == 1.0

    def test_exact_match_on_name_ignores_accents(self):
        row = ProductRowFactory.create(name="Lámpara de Pie")

        candidate = score_candidate("lampara de pie", row, 0)

        assert candidate.method == MatchMethod.EXACT

    def test_image_name_contained_in_product_name(self):
        row = ProductRowFactory.create(name="Camisa Azul Talla M")

        candidate = score_candidate("camisa azul", row, 0)

        assert candidate.method == MatchMethod.CONTAINS
        assert candidate.score == 0.75

    def test_product_name_contained_in_image_name(self):
        row = ProductRowFactory.create(name="Camisa Azul")

        candidate = score_candidate("camisa azul talla grande", row, 0)

        assert candidate.method == MatchMethod.CONTAINS

    def test_fuzzy_match_above_threshold(self):
        row = ProductRowFactory.create(sku="X1", name="Camiza Azul")

        candidate = score_candidate("camisa azul", row, 0, threshold=0.4)

        assert candidate.method == MatchMethod.FUZZY
        assert candidate.score == pytest.approx(0.909, abs=0.001)

    def test_fuzzy_respects_threshold(self):
        row = ProductRowFactory.create(sku="X1", name="Camiza Azul")

        candidate = score_candidate("camisa azul", row, 0, threshold=0.95)

        assert candidate.method == MatchMethod.NONE
        assert candidate.score == 0.0
        assert candidate.similarity == pytest.approx(0.909, abs=0.001)

    def test_empty_image_name_never_matches(self):
        row = ProductRowFactory.create(name="Mesa")

        candidate = score_candidate("", row, 0)

        assert candidate.method == MatchMethod.NONE


class TestMatch:
    """Tests for match()"""

    def test_sorted_by_score_descending(self):
        rows = [
            ProductRowFactory.create(sku="A1", name="Sillón Reclinable"),
            ProductRowFactory.create(sku="B1", name="Mesa Roble Grande"),
            ProductRowFactory.create(sku="C1", name="Mesa Roble"),
        ]

        ranked = match("mesa roble", rows)

        assert [c.row.sku for c in ranked[:2]] == ["C1", "B1"]
        assert ranked[0].method == MatchMethod.EXACT
        assert ranked[1].method == MatchMethod.CONTAINS

    def test_tie_keeps_input_order(self):
        rows = [
            ProductRowFactory.create(sku="FIRST", name="Mesa"),
            ProductRowFactory.create(sku="SECOND", name="Mesa"),
        ]

        ranked = match("mesa", rows)

        assert ranked[0].row.sku == "FIRST"
        assert ranked[0].row_index == 0

    def test_keeps_non_qualifying_candidates(self):
        rows = [ProductRowFactory.create(sku="Z9", name="Reloj")]

        ranked = match("lampara", rows)

        assert len(ranked) == 1
        assert ranked[0].method == MatchMethod.NONE


# ===================
# GROUPING
# ===================

class TestGroupImages:
    """Tests for group_images()"""

    def test_secondary_joins_primary(self, sample_images):
        groups = group_images(sample_images)

        assert len(groups) == 3
        primary, secondaries = groups[0]
        assert primary.file_name == "camisa_azul.jpg"
        assert [s.file_name for s in secondaries] == ["camisa_azul_2.jpg"]

    def test_orphan_secondary_is_promoted_in_place(self):
        images = [
            ImageFactory.create("silla_2.jpg"),
            ImageFactory.create("mesa.jpg"),
            ImageFactory.create("silla_3.jpg"),
        ]

        groups = group_images(images)

        assert [p.file_name for p, _ in groups] == ["silla_2.jpg", "mesa.jpg"]
        assert [s.file_name for s in groups[0][1]] == ["silla_3.jpg"]

    def test_repeated_primary_becomes_extra_view(self):
        images = [
            ImageFactory.create("mesa.jpg"),
            ImageFactory.create("MESA.png"),
        ]

        groups = group_images(images)

        assert len(groups) == 1
        assert groups[0][1][0].file_name == "MESA.png"


# ===================
# MATCHING
# ===================

class TestMatchImages:
    """Tests for match_images()"""

    def test_one_result_per_primary_image(self, sample_rows, sample_images):
        results = match_images(sample_images, sample_rows)

        assert len(results) == 3
        assert [r.product_row.sku for r in results] == ["CAM-AZ-M", "ZAP-NEG-42", "GOR-DEP"]
        assert results[0].method == MatchMethod.CONTAINS
        assert results[1].method == MatchMethod.EXACT
        assert results[0].secondary_image_ids == [sample_images[1].id]

    def test_first_match_wins(self):
        rows = [ProductRowFactory.create(sku="MR-1", name="Mesa Roble")]
        images = [
            ImageFactory.create("mesa roble.jpg"),
            ImageFactory.create("mesa-roble-2.jpg"),
        ]

        results = match_images(images, rows)

        assert results[0].product_row.sku == "MR-1"
        assert results[1].product_row is None
        assert results[1].method == MatchMethod.NONE
        assert results[1].candidates[0].row.sku == "MR-1"

    def test_candidates_are_truncated(self):
        rows = ProductRowFactory.create_batch(CANDIDATES_PER_IMAGE + 3)
        images = [ImageFactory.create("sin_relacion.jpg")]

        results = match_images(images, rows)

        assert len(results[0].candidates) == CANDIDATES_PER_IMAGE

    def test_manual_override_beats_automatic_match(self, sample_rows, sample_images):
        gorra = sample_rows[2]
        zapatos_image = sample_images[2]
        overrides = ManualOverrides()
        overrides.set_match(gorra.id, zapatos_image.id)

        results = match_images(sample_images, sample_rows, overrides)

        by_image = {r.image_id: r for r in results}
        assert by_image[zapatos_image.id].product_row.sku == "GOR-DEP"
        assert by_image[zapatos_image.id].method == MatchMethod.MANUAL
        assert by_image[zapatos_image.id].score == 1.0
        # The gorra row is reserved, so its own photo stays unmatched
        assert by_image[sample_images[3].id].product_row is None

    def test_default_override_reserves_product(self, sample_rows, sample_images):
        overrides = ManualOverrides()
        overrides.use_default_image(sample_rows[1].id)

        results = match_images(sample_images, sample_rows, overrides)
        assignments = resolve_assignments(sample_rows, results, overrides)

        assert results[1].product_row is None
        assert assignments[1].status == AssignmentStatus.DEFAULT
        assert assignments[1].image_id is None

    def test_same_image_for_two_products_rejected(self, sample_rows, sample_images):
        overrides = {
            sample_rows[0].id: sample_images[0].id,
            sample_rows[1].id: sample_images[0].id,
        }

        with pytest.raises(ValidationError) as exc_info:
            match_images(sample_images, sample_rows, overrides)

        assert exc_info.value.code == "DUPLICATE_IMAGE_ASSIGNMENT"

    def test_override_to_secondary_image_detaches_it(self, sample_rows, sample_images):
        camisa = sample_rows[0]
        primary, secondary = sample_images[0], sample_images[1]
        overrides = ManualOverrides()
        overrides.set_match(camisa.id, secondary.id)

        results = match_images(sample_images, sample_rows, overrides)
        assignments = resolve_assignments(sample_rows, results, overrides)

        by_image = {r.image_id: r for r in results}
        assert len(results) == 4
        assert by_image[secondary.id].product_row.sku == "CAM-AZ-M"
        assert by_image[secondary.id].method == MatchMethod.MANUAL
        assert by_image[primary.id].secondary_image_ids == []
        assert [r.image_id for r in results[:2]] == [primary.id, secondary.id]
        assert assignments[0].image_id == secondary.id

    def test_override_to_unknown_image_is_ignored(self, sample_rows, sample_images):
        overrides = {sample_rows[1].id: "missing-image"}

        results = match_images(sample_images, sample_rows, overrides)

        assert results[1].product_row.sku == "ZAP-NEG-42"
        assert results[1].method == MatchMethod.EXACT


class TestAssignments:
    """Tests for resolve_assignments() and match_stats()"""

    def test_assignments_in_row_order(self, sample_rows, sample_images):
        results = match_images(sample_images[:1], sample_rows)

        assignments = resolve_assignments(sample_rows, results)

        assert [a.sku for a in assignments] == ["CAM-AZ-M", "ZAP-NEG-42", "GOR-DEP"]
        assert [a.status for a in assignments] == [
            AssignmentStatus.MATCHED,
            AssignmentStatus.UNMATCHED,
            AssignmentStatus.UNMATCHED,
        ]

    def test_stats(self, sample_rows, sample_images):
        results = match_images(sample_images, sample_rows)
        assignments = resolve_assignments(sample_rows, results)

        stats = match_stats(assignments)

        assert stats.total == 3
        assert stats.matched == 3
        assert stats.unmatched == 0
        assert stats.with_secondary == 1

    def test_apply_default_to_unmatched(self, sample_rows, sample_images):
        results = match_images(sample_images[:1], sample_rows)
        overrides = ManualOverrides()

        changed = overrides.apply_default_to_unmatched(resolve_assignments(sample_rows, results))
        assignments = resolve_assignments(sample_rows, match_images(sample_images[:1], sample_rows, overrides), overrides)

        assert changed == 2
        assert match_stats(assignments).default == 2
        assert match_stats(assignments).matched == 1

    def test_clear_single_override(self, sample_rows):
        overrides = ManualOverrides({sample_rows[0].id: "default", sample_rows[1].id: "default"})

        overrides.clear(sample_rows[0].id)

        assert list(overrides) == [sample_rows[1].id]

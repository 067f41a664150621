"""
Image ↔ product matching.

Pairs loosely named image files with rows of the merchant's product sheet.
Each candidate row goes through an ordered list of stages; the first stage
that returns a hit decides that candidate's score and method:

    exact     cleaned image name == normalized SKU or name       1.0
    contains  image name inside product name or the reverse      0.75
    fuzzy     best similarity vs SKU / name >= threshold        similarity
    none      nothing qualified                                  0.0

Manual overrides (product_id → image_id or "default") are state owned by the
caller and passed in on every call; they always beat automatic scores.
"""

from collections.abc import Iterator, Mapping
from typing import Callable, Optional, Sequence
import structlog
from rapidfuzz import fuzz

from config import settings
from exceptions import ValidationError
from models.bulk_upload import (
    DEFAULT_IMAGE,
    AssignmentStatus,
    ImageAsset,
    MatchMethod,
    MatchResult,
    MatchStats,
    ProductAssignment,
    ProductRow,
    ScoredCandidate,
)
from utils.text_utils import normalize_identifier

logger = structlog.get_logger(__name__)

EXACT_SCORE = 1.0
CONTAINS_SCORE = 0.75
CANDIDATES_PER_IMAGE = 5

StageHit = Optional[tuple[MatchMethod, float]]


# ===================
# SIMILARITY
# ===================

def similarity(first: str, second: str) -> float:
    """
    Normalized Indel similarity (rapidfuzz fuzz.ratio) scaled to 0..1.

    Empty strings never match.

    - ("camisa azul", "camiza azul") → 0.909
    - ("mesa", "gorro") → 0.0
    """
    if not first or not second:
        return 0.0
    return fuzz.ratio(first, second) / 100.0


def best_similarity(target: str, row: ProductRow) -> float:
    """Highest similarity of target against the row's SKU and name."""
    return max(
        similarity(target, normalize_identifier(row.sku)),
        similarity(target, normalize_identifier(row.name)),
    )


# ===================
# STAGES
# ===================

def exact_stage(target: str, row: ProductRow, threshold: float) -> StageHit:
    if target and target in (normalize_identifier(row.sku), normalize_identifier(row.name)):
        return MatchMethod.EXACT, EXACT_SCORE
    return None


def contains_stage(target: str, row: ProductRow, threshold: float) -> StageHit:
    name = normalize_identifier(row.name)
    if target and name and (target in name or name in target):
        return MatchMethod.CONTAINS, CONTAINS_SCORE
    return None


def fuzzy_stage(target: str, row: ProductRow, threshold: float) -> StageHit:
    score = best_similarity(target, row)
    if target and score >= threshold:
        return MatchMethod.FUZZY, score
    return None


MATCH_STAGES: tuple[Callable[[str, ProductRow, float], StageHit], ...] = (
    exact_stage,
    contains_stage,
    fuzzy_stage,
)


def score_candidate(
    clean_image_name: str,
    row: ProductRow,
    row_index: int,
    threshold: Optional[float] = None,
) -> ScoredCandidate:
    """Run the stages in order, stopping at the first hit."""
    threshold = settings.match_acceptance_threshold if threshold is None else threshold
    target = normalize_identifier(clean_image_name)

    for stage in MATCH_STAGES:
        hit = stage(target, row, threshold)
        if hit is not None:
            method, score = hit
            return ScoredCandidate(
                row_index=row_index,
                row=row,
                score=score,
                method=method,
                similarity=score,
            )

    return ScoredCandidate(
        row_index=row_index,
        row=row,
        score=0.0,
        method=MatchMethod.NONE,
        similarity=best_similarity(target, row) if target else 0.0,
    )


def match(
    clean_image_name: str,
    candidates: Sequence[ProductRow],
    threshold: Optional[float] = None,
) -> list[ScoredCandidate]:
    """
    Score every candidate row against one cleaned image name.

    Returns all candidates sorted by score descending. The sort is stable,
    so on an exact tie the row that came first in the input wins.
    Candidates that did not qualify are kept with method NONE so a manual
    resolution screen can still list them.
    """
    scored = [
        score_candidate(clean_image_name, row, index, threshold)
        for index, row in enumerate(candidates)
    ]
    return sorted(scored, key=lambda c: c.score, reverse=True)


# ===================
# IMAGE GROUPING
# ===================

def group_images(images: Sequence[ImageAsset]) -> list[tuple[ImageAsset, list[ImageAsset]]]:
    """
    Attach secondary images (name_2.jpg, name_b.jpg) to their primary.

    Secondaries join the first primary with the same clean name. When a
    group has no primary at all, its first secondary (input order) is
    promoted so the photos are not lost.

    Returns:
        List of (primary, secondaries) in primary input order
    """
    groups: dict[str, tuple[ImageAsset, list[ImageAsset]]] = {}
    orphans: dict[str, list[ImageAsset]] = {}
    order: list[str] = []

    for image in images:
        if not image.is_secondary and image.clean_name not in groups:
            groups[image.clean_name] = (image, [])
            order.append(image.clean_name)

    for image in images:
        if image.is_secondary:
            if image.clean_name in groups:
                groups[image.clean_name][1].append(image)
            else:
                orphans.setdefault(image.clean_name, []).append(image)
        elif groups[image.clean_name][0] is not image:
            # Same clean name as an earlier primary: keep it as an extra view
            groups[image.clean_name][1].append(image)

    for clean_name, members in orphans.items():
        logger.debug("secondary_image_promoted", clean_name=clean_name, file_name=members[0].file_name)
        groups[clean_name] = (members[0], members[1:])
        order.append(clean_name)

    # Promoted groups go where their first image appeared
    position = {image.id: i for i, image in enumerate(images)}
    order.sort(key=lambda name: position[groups[name][0].id])

    return [groups[name] for name in order]


def detach_images(
    groups: Sequence[tuple[ImageAsset, list[ImageAsset]]],
    image_ids: set[str],
    images: Sequence[ImageAsset],
) -> list[tuple[ImageAsset, list[ImageAsset]]]:
    """
    Pull the given secondary images out of their groups as primaries of
    their own, so a manual override can pair them directly.

    Returns:
        Groups in primary input order
    """
    kept: list[tuple[ImageAsset, list[ImageAsset]]] = []
    detached: list[ImageAsset] = []

    for primary, secondaries in groups:
        detached.extend(s for s in secondaries if s.id in image_ids)
        kept.append((primary, [s for s in secondaries if s.id not in image_ids]))

    if not detached:
        return kept

    for image in detached:
        logger.info("secondary_image_detached", file_name=image.file_name)

    position = {image.id: i for i, image in enumerate(images)}
    merged = kept + [(image, []) for image in detached]
    merged.sort(key=lambda group: position[group[0].id])
    return merged


# ===================
# MATCHING
# ===================

def match_images(
    images: Sequence[ImageAsset],
    rows: Sequence[ProductRow],
    overrides: Optional[Mapping[str, str]] = None,
    threshold: Optional[float] = None,
) -> list[MatchResult]:
    """
    Produce exactly one MatchResult per primary image.

    Manual overrides are applied first and skip scoring. An override may
    name any uploaded image; a secondary image named this way leaves its
    group and is paired on its own. The remaining rows are claimed
    first-match-wins in image order: each image takes its best qualifying
    row that no earlier image claimed.

    Args:
        images: All uploaded images (primary and secondary)
        rows: Parsed product rows
        overrides: product_id → image_id, or "default" for no image
        threshold: Fuzzy acceptance threshold (settings default)

    Returns:
        MatchResult list in primary image order

    Raises:
        ValidationError: If two products are manually assigned the same image
    """
    overrides = overrides or {}
    known_ids = {image.id for image in images}
    override_targets = {overrides[row.id] for row in rows if overrides.get(row.id) in known_ids}
    groups = detach_images(group_images(images), override_targets, images)
    primary_ids = {primary.id for primary, _ in groups}

    manual_by_image: dict[str, ProductRow] = {}
    reserved: set[str] = set()

    for row in rows:
        target = overrides.get(row.id)
        if target is None:
            continue
        if target == DEFAULT_IMAGE:
            reserved.add(row.id)
            continue
        if target not in primary_ids:
            logger.warning("override_image_not_found", product_id=row.id, image_id=target)
            continue
        if target in manual_by_image:
            raise ValidationError(
                message="Image assigned to more than one product",
                code="DUPLICATE_IMAGE_ASSIGNMENT",
                details={
                    "image_id": target,
                    "product_ids": [manual_by_image[target].id, row.id],
                },
            )
        manual_by_image[target] = row
        reserved.add(row.id)

    claimed: set[str] = set()
    results: list[MatchResult] = []

    for primary, secondaries in groups:
        secondary_ids = [image.id for image in secondaries]

        manual_row = manual_by_image.get(primary.id)
        if manual_row is not None:
            results.append(MatchResult(
                image_id=primary.id,
                file_name=primary.file_name,
                product_row=manual_row,
                score=1.0,
                method=MatchMethod.MANUAL,
                secondary_image_ids=secondary_ids,
            ))
            continue

        ranked = [c for c in match(primary.clean_name, rows, threshold) if c.row.id not in reserved]
        chosen = next(
            (c for c in ranked if c.method != MatchMethod.NONE and c.row.id not in claimed),
            None,
        )

        if chosen is not None:
            claimed.add(chosen.row.id)

        results.append(MatchResult(
            image_id=primary.id,
            file_name=primary.file_name,
            product_row=chosen.row if chosen else None,
            score=chosen.score if chosen else 0.0,
            method=chosen.method if chosen else MatchMethod.NONE,
            secondary_image_ids=secondary_ids,
            candidates=ranked[:CANDIDATES_PER_IMAGE],
        ))

    logger.info(
        "images_matched",
        primary_images=len(results),
        matched=sum(1 for r in results if r.is_matched),
        manual=len(manual_by_image),
    )

    return results


def resolve_assignments(
    rows: Sequence[ProductRow],
    results: Sequence[MatchResult],
    overrides: Optional[Mapping[str, str]] = None,
) -> list[ProductAssignment]:
    """Per-product view of the match results, in row order."""
    overrides = overrides or {}
    by_product = {r.product_row.id: r for r in results if r.product_row is not None}
    assignments = []

    for row in rows:
        if overrides.get(row.id) == DEFAULT_IMAGE:
            assignments.append(ProductAssignment(
                product_id=row.id,
                sku=row.sku,
                status=AssignmentStatus.DEFAULT,
                method=MatchMethod.MANUAL,
            ))
            continue

        result = by_product.get(row.id)
        if result is None:
            assignments.append(ProductAssignment(
                product_id=row.id,
                sku=row.sku,
                status=AssignmentStatus.UNMATCHED,
            ))
            continue

        assignments.append(ProductAssignment(
            product_id=row.id,
            sku=row.sku,
            status=AssignmentStatus.MATCHED,
            image_id=result.image_id,
            secondary_image_ids=result.secondary_image_ids,
            method=result.method,
            score=result.score,
        ))

    return assignments


def match_stats(assignments: Sequence[ProductAssignment]) -> MatchStats:
    """Counts for the matching table."""
    return MatchStats(
        total=len(assignments),
        matched=sum(1 for a in assignments if a.status == AssignmentStatus.MATCHED),
        default=sum(1 for a in assignments if a.status == AssignmentStatus.DEFAULT),
        unmatched=sum(1 for a in assignments if a.status == AssignmentStatus.UNMATCHED),
        with_secondary=sum(1 for a in assignments if a.secondary_image_ids),
    )


# ===================
# MANUAL OVERRIDES
# ===================

class ManualOverrides(Mapping):
    """
    Caller-owned manual pairing state for one upload session.

    Maps product_id → image_id, or "default" for products the merchant
    wants to publish without a photo. Pass it to match_images on every
    recompute.
    """

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._overrides: dict[str, str] = dict(initial or {})

    def __getitem__(self, product_id: str) -> str:
        return self._overrides[product_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._overrides)

    def __len__(self) -> int:
        return len(self._overrides)

    def set_match(self, product_id: str, image_id: str) -> None:
        self._overrides[product_id] = image_id

    def use_default_image(self, product_id: str) -> None:
        self._overrides[product_id] = DEFAULT_IMAGE

    def apply_default_to_unmatched(self, assignments: Sequence[ProductAssignment]) -> int:
        """Mark every unmatched product as imageless. Returns how many."""
        count = 0
        for assignment in assignments:
            if assignment.status == AssignmentStatus.UNMATCHED:
                self._overrides[assignment.product_id] = DEFAULT_IMAGE
                count += 1
        return count

    def clear(self, product_id: Optional[str] = None) -> None:
        """Drop one override, or all of them."""
        if product_id is None:
            self._overrides.clear()
        else:
            self._overrides.pop(product_id, None)

# ingest/scoring.py
import re

STAGE2_THRESHOLD = 0.75
STAGE3_THRESHOLD = 0.95

TITLE_WEIGHT = 0.35
IMAGE_WEIGHT = 0.25
PRICE_WEIGHT = 0.25
DESCRIPTION_WEIGHT = 0.10

MISSING_IMAGE = "Missing product image"
MISSING_PRICE = "Missing price or currency"
MISSING_TITLE = "Missing title"

# Retailer decorations around product titles.
BOILERPLATE_PATTERNS = [
    re.compile(r"^Amazon\.com:\s*", re.IGNORECASE),
    re.compile(r"\s*\|\s*Amazon\.com$", re.IGNORECASE),
    re.compile(r"\s*-\s*Amazon\.com$", re.IGNORECASE),
    re.compile(r"^Walmart\.com:\s*", re.IGNORECASE),
    re.compile(r"\s*-\s*Walmart\.com$", re.IGNORECASE),
    re.compile(r"^Target:\s*", re.IGNORECASE),
    re.compile(r"\s*:\s*Target$", re.IGNORECASE),
]

MERGED_FIELDS = ("canonical_url", "title", "description", "price", "currency", "availability")


def clean_title_text(text):
    """Strip known retailer prefixes/suffixes from a title or description."""
    if text is None:
        return None
    for pattern in BOILERPLATE_PATTERNS:
        text = pattern.sub("", text)
    return text.strip()


def _pick(current, incoming):
    if incoming is not None and incoming != "":
        return incoming
    return current


def score_preview(preview):
    """
    Compute the confidence of a preview and attach missing-field warnings.

    Weights: title 0.35, image 0.25, price together with currency 0.25,
    description 0.10, capped at 1.0. A description that repeats the title
    verbatim is dropped before scoring.

    Args:
        preview (ProductPreview): preview to score; it is not modified

    Returns:
        ProductPreview: copy with ``confidence`` and ``warnings`` set
    """
    description = preview.description
    if description and preview.title and description.strip() == preview.title.strip():
        description = None

    confidence = 0.0
    if preview.title:
        confidence += TITLE_WEIGHT
    if preview.image:
        confidence += IMAGE_WEIGHT
    if preview.price is not None and preview.currency:
        confidence += PRICE_WEIGHT
    if description:
        confidence += DESCRIPTION_WEIGHT
    confidence = min(1.0, round(confidence, 4))

    warnings = list(preview.warnings or [])
    missing = []
    if not preview.image:
        missing.append(MISSING_IMAGE)
    if preview.price is None or not preview.currency:
        missing.append(MISSING_PRICE)
    if not preview.title:
        missing.append(MISSING_TITLE)
    for warning in missing:
        if warning not in warnings:
            warnings.append(warning)

    return preview.model_copy(
        update={"description": description, "confidence": confidence, "warnings": warnings}
    )


def merge_previews(base, overlay=None):
    """
    Combine two previews field by field.

    The overlay wins for a field only when it provides a value (not None and
    not an empty string). ``url`` always comes from ``base``; ``images`` are
    replaced only by a non-empty overlay list; ``source`` follows the overlay;
    warnings are concatenated base first. Title and description go through
    ``clean_title_text``.

    The confidence is copied from ``base`` unchanged and is stale; callers
    must rescore the merged preview.
    """
    if overlay is None:
        return base.model_copy(
            update={
                "title": clean_title_text(base.title),
                "description": clean_title_text(base.description),
                "warnings": list(base.warnings or []),
            }
        )

    merged = {field: _pick(getattr(base, field), getattr(overlay, field)) for field in MERGED_FIELDS}
    overlay_image = overlay.image or (overlay.images[0] if overlay.images else None)
    merged["image"] = _pick(base.image, overlay_image)
    merged["images"] = list(overlay.images) if overlay.images else base.images
    merged["title"] = clean_title_text(merged["title"])
    merged["description"] = clean_title_text(merged["description"])
    merged["source"] = overlay.source or base.source
    merged["warnings"] = list(base.warnings or []) + list(overlay.warnings or [])
    return base.model_copy(update=merged)


def needs_better_data(preview, threshold):
    """True when confidence is below ``threshold`` or a critical field is missing."""
    return preview.confidence < threshold or preview.is_weak()

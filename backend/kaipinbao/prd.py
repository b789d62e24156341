"""
开品宝 Backend — PRD Data Extraction & Merge

The assistant embeds structured updates in its free-form reply as a fenced block:

    ```prd-data
    {"usageScenario": "...", "coreFeatures": ["..."]}
    ```

This module finds that block, parses it, deep-merges it into the project's
accumulated PrdData, and evaluates whether the document is complete enough to
advance to the next stage.

Merge dispatch is driven by PRD_FIELDS (field name → FieldKind), not by
per-field branching, so every field's merge rule is declared in one place.
"""

import json
import re
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from kaipinbao.config import log
from kaipinbao.models import CompletionStatus, PrdData


PRD_FENCE_TAG = "prd-data"
COMPLETION_SENTINELS = ("[PRD_READY]", "[DESIGN_READY]")

_FENCED_BLOCK_RE = re.compile(r"```" + re.escape(PRD_FENCE_TAG) + r"[ \t]*\r?\n(.*?)```", re.DOTALL)


class FieldKind(str, Enum):
    SCALAR = "scalar"
    STRING_ARRAY = "string_array"
    NESTED_OBJECT = "nested_object"
    STRUCTURED_LIST = "structured_list"


PRD_FIELDS: dict[str, FieldKind] = {
    # Scalars: last non-null write wins
    "productName": FieldKind.SCALAR,
    "productTagline": FieldKind.SCALAR,
    "productCategory": FieldKind.SCALAR,
    "selectedDirection": FieldKind.SCALAR,
    "usageScenario": FieldKind.SCALAR,
    "targetAudience": FieldKind.SCALAR,
    "designStyle": FieldKind.SCALAR,
    "pricingRange": FieldKind.SCALAR,
    "dialoguePhase": FieldKind.SCALAR,
    # String arrays: union, never shrink
    "coreFeatures": FieldKind.STRING_ARRAY,
    "painPoints": FieldKind.STRING_ARRAY,
    "sellingPoints": FieldKind.STRING_ARRAY,
    # Nested objects: shallow key-by-key merge
    "specifications": FieldKind.NESTED_OBJECT,
    "cmfDesign": FieldKind.NESTED_OBJECT,
    "userExperience": FieldKind.NESTED_OBJECT,
    "marketPositioning": FieldKind.NESTED_OBJECT,
    "packaging": FieldKind.NESTED_OBJECT,
    "marketAnalysis": FieldKind.NESTED_OBJECT,
    "marketingAssets": FieldKind.NESTED_OBJECT,
    "videoAssets": FieldKind.NESTED_OBJECT,
    "competitorInsights": FieldKind.NESTED_OBJECT,
    "initialMarketAnalysis": FieldKind.NESTED_OBJECT,
    # Structured lists: replaced wholesale
    "featureMatrix": FieldKind.STRUCTURED_LIST,
}

# String-array members inside nested objects that accumulate like top-level arrays.
NESTED_ARRAY_MEMBERS: dict[str, frozenset[str]] = {
    "marketAnalysis": frozenset({"marketTrends"}),
    "marketingAssets": frozenset({"structureHighlights", "explodedComponents", "usageScenarios"}),
    "videoAssets": frozenset({"keyActions"}),
}

# Fields that must all be populated for the document to count as complete.
REQUIRED_FIELDS: tuple[str, ...] = (
    "selectedDirection",
    "usageScenario",
    "targetAudience",
    "designStyle",
    "coreFeatures",
    "pricingRange",
)


# ─────────────────────────────────────────────
# Extraction
# ─────────────────────────────────────────────

def find_prd_block(text: str) -> Optional[str]:
    """Return the inner text of the first ```prd-data block, or None."""
    if not text:
        return None
    match = _FENCED_BLOCK_RE.search(text)
    if not match:
        return None
    return match.group(1).strip()


def extract_prd_data(text: str, project_id: str | None = None) -> Optional[dict]:
    """
    Extract the partial PrdData emitted in one assistant turn.

    Returns None when there is no block, the block is not valid JSON, or the
    JSON is not an object. Known fields whose JSON type does not fit PrdData
    are dropped one by one; the rest of the block is kept. Failures are
    logged, never raised.
    """
    block = find_prd_block(text)
    if block is None:
        return None

    try:
        parsed = json.loads(block)
    except json.JSONDecodeError as e:
        log("WARN", "prd-data block is not valid json", project_id=project_id, error=str(e))
        return None

    if not isinstance(parsed, dict):
        log("WARN", "prd-data block is not a json object", project_id=project_id,
            got=type(parsed).__name__)
        return None

    cleaned = {}
    for name, value in parsed.items():
        ok, value = conform_field(name, value)
        if ok:
            cleaned[name] = value
        else:
            log("WARN", "prd-data field has unexpected type, dropped", project_id=project_id,
                field=name, got=type(value).__name__)
    return cleaned


def conform_field(name: str, value: Any) -> tuple[bool, Any]:
    """Check one field against PrdData; numeric scalars are coerced to strings."""
    try:
        PrdData.model_validate({name: value})
        return True, value
    except ValidationError:
        pass
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
    if is_number and PRD_FIELDS.get(name) is FieldKind.SCALAR:
        return True, str(value)
    return False, value


# ─────────────────────────────────────────────
# Merge
# ─────────────────────────────────────────────

def _union_strings(existing: Any, incoming: Any) -> list:
    """Order-preserving union: existing items first, then new incoming ones."""
    result: list = []
    seen: set = set()
    for source in (existing, incoming):
        if not isinstance(source, list):
            continue
        for item in source:
            key = json.dumps(item, sort_keys=True, ensure_ascii=False) if isinstance(item, (dict, list)) else item
            if key in seen:
                continue
            seen.add(key)
            result.append(item)
    return result


def _merge_nested(field: str, existing: Any, incoming: dict) -> dict:
    base = dict(existing) if isinstance(existing, dict) else {}
    array_members = NESTED_ARRAY_MEMBERS.get(field, frozenset())
    for key, value in incoming.items():
        if value is None:
            continue
        if key in array_members:
            base[key] = _union_strings(base.get(key), value)
        else:
            base[key] = value
    return base


def merge_field(kind: FieldKind, field: str, existing: Any, incoming: Any) -> Any:
    """Merge one field's incoming value onto the existing one. `incoming` is never None here."""
    if kind is FieldKind.STRING_ARRAY:
        return _union_strings(existing, incoming)
    if kind is FieldKind.NESTED_OBJECT:
        if not isinstance(incoming, dict):
            return incoming
        return _merge_nested(field, existing, incoming)
    # SCALAR and STRUCTURED_LIST both overwrite
    return incoming


def merge_prd_data(existing: Optional[dict], incoming: Optional[dict]) -> dict:
    """
    Deep-merge a partial PrdData into the accumulated document.

    - existing absent → incoming verbatim
    - incoming None values are ignored, so a populated field never reverts to null
    - fields not in PRD_FIELDS are treated as scalars and passed through
    Neither argument is mutated.
    """
    if not incoming:
        return dict(existing or {})
    if not existing:
        return {k: v for k, v in incoming.items() if v is not None}

    result = dict(existing)
    for field, value in incoming.items():
        if value is None:
            continue
        kind = PRD_FIELDS.get(field, FieldKind.SCALAR)
        result[field] = merge_field(kind, field, result.get(field), value)
    return result


# ─────────────────────────────────────────────
# Completion predicate
# ─────────────────────────────────────────────

def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True


def contains_sentinel(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for sentinel in COMPLETION_SENTINELS:
        if sentinel in text:
            return sentinel
    return None


def evaluate_completion(prd_data: Optional[dict], assistant_text: Optional[str] = None) -> CompletionStatus:
    """
    Decide whether the conversation can advance.

    Ready when the assistant emitted a completion sentinel OR every required
    field is populated. The checklist is always returned for the progress UI.
    """
    prd_data = prd_data or {}
    completed = [f for f in REQUIRED_FIELDS if _is_filled(prd_data.get(f))]
    missing = [f for f in REQUIRED_FIELDS if f not in completed]
    percent = round(len(completed) * 100 / len(REQUIRED_FIELDS))

    sentinel = contains_sentinel(assistant_text)
    if sentinel:
        reason = "sentinel"
    elif not missing:
        reason = "fields_complete"
    else:
        reason = None

    return CompletionStatus(
        ready=reason is not None,
        reason=reason,
        sentinel=sentinel,
        completed=completed,
        missing=missing,
        percent=percent,
    )

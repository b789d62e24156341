"""
开品宝 Backend — PRD Section Regeneration

The user can ask for one section of the PRD to be rewritten. Each section has a
kind that decides how the model's reply is read (plain text, a string array or
a JSON object) and the PrdData fields the result is written to.

Regeneration replaces those fields instead of merging into them: the user asked
for new content, so a regenerated coreFeatures list may be shorter than the old one.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from kaipinbao.config import log
from kaipinbao.prd import FieldKind, conform_field


@dataclass(frozen=True)
class Section:
    kind: FieldKind
    fields: tuple[str, ...]


SECTIONS: dict[str, Section] = {
    "productOverview": Section(
        FieldKind.NESTED_OBJECT, ("productName", "productTagline", "productCategory", "pricingRange")
    ),
    "usageScenario": Section(FieldKind.SCALAR, ("usageScenario",)),
    "targetAudience": Section(FieldKind.SCALAR, ("targetAudience",)),
    "designStyle": Section(FieldKind.NESTED_OBJECT, ("designStyle", "cmfDesign")),
    "coreFeatures": Section(FieldKind.STRING_ARRAY, ("coreFeatures",)),
    "specifications": Section(FieldKind.NESTED_OBJECT, ("specifications",)),
    "marketPositioning": Section(FieldKind.NESTED_OBJECT, ("marketPositioning",)),
    "packaging": Section(FieldKind.NESTED_OBJECT, ("packaging",)),
    "marketingAssets": Section(FieldKind.NESTED_OBJECT, ("marketingAssets",)),
    "videoAssets": Section(FieldKind.NESTED_OBJECT, ("videoAssets",)),
}

MAX_LINE_FEATURES = 6

_JSON_ARRAY_RE = re.compile(r"\[.*?\]", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_HEADING_RE = re.compile(r"^#+\s*", re.MULTILINE)
_BULLET_RE = re.compile(r"^[-•]\s*")


# ─────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────

def parse_string_array(text: str) -> list[str]:
    """
    JSON array if the reply has one; bullet lines if that array is broken;
    otherwise the first non-heading lines.
    """
    match = _JSON_ARRAY_RE.search(text)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            bullets = [line.strip() for line in text.splitlines() if line.strip().startswith(("-", "•"))]
            return [_BULLET_RE.sub("", line).strip() for line in bullets]
        return [item.strip() for item in parsed if isinstance(item, str) and item.strip()]

    lines = [line.strip() for line in text.splitlines() if line.strip() and not line.startswith("#")]
    return lines[:MAX_LINE_FEATURES]


def parse_object(text: str) -> dict:
    """JSON object from a fenced block or the bare reply; {"raw": text} when there is none."""
    candidate = text
    fenced = _CODE_FENCE_RE.search(text)
    if fenced:
        candidate = fenced.group(1).strip()
    match = _JSON_OBJECT_RE.search(candidate)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass
    return {"raw": text}


def clean_text(text: str) -> str:
    """Drop markdown headings and bold markers."""
    return _HEADING_RE.sub("", text).replace("**", "").strip()


def parse_section_output(section: Section, text: str) -> Any:
    if section.kind is FieldKind.STRING_ARRAY:
        return parse_string_array(text)
    if section.kind is FieldKind.NESTED_OBJECT:
        return parse_object(text)
    return clean_text(text)


# ─────────────────────────────────────────────
# Applying
# ─────────────────────────────────────────────

def apply_section(
    prd_data: Optional[dict],
    section: Section,
    content: Any,
    project_id: str | None = None,
) -> tuple[dict, list[str]]:
    """
    Write regenerated content into a copy of the document.

    Single-field sections take the content as is. Multi-field sections pick
    their fields out of the returned object. Empty values and values of the
    wrong type are skipped, so a field is never cleared. Returns the updated
    document and the fields that were written.
    """
    updated = dict(prd_data or {})
    if len(section.fields) == 1:
        values = {section.fields[0]: content}
    elif isinstance(content, dict):
        values = {field: content.get(field) for field in section.fields}
    else:
        values = {}

    written = []
    for field, value in values.items():
        if value in (None, "", [], {}):
            continue
        ok, value = conform_field(field, value)
        if not ok:
            log("WARN", "regenerated field has unexpected type, skipped", project_id=project_id,
                field=field, got=type(value).__name__)
            continue
        updated[field] = value
        written.append(field)
    return updated, written

from __future__ import annotations

from postureguard.domain.conditions import ApprovedRegions, HasTags
from postureguard.services.compliance.registry import leaf_check
from postureguard.services.compliance.verdicts import (
    EvaluationContext,
    ResourceRecord,
    Verdict,
    compliant,
    non_compliant,
    not_applicable,
)


def _tag_value(tag: str) -> str | None:
    key, sep, value = tag.partition(":")
    return value.strip() if sep else None


@leaf_check(HasTags)
def check_has_tags(condition: HasTags, resource: ResourceRecord | None, context: EvaluationContext) -> Verdict:
    tags = resource.tags
    required = [req for req in condition.required_tags if req.key]
    if not required:
        if len(tags) >= condition.min_tags:
            return compliant(f"Has {len(tags)} tag(s): {', '.join(tags)}")
        return non_compliant(f"Has {len(tags)} tag(s). At least {condition.min_tags} tag(s) required.")

    missing: list[str] = []
    wrong_value: list[str] = []
    for req in required:
        key = req.key.lower()
        match = next(
            (tag for tag in tags if tag.lower() == key or tag.lower().startswith(f"{key}:")),
            None,
        )
        if match is None:
            missing.append(req.key)
            continue
        if req.value and req.value != "*":
            found = _tag_value(match)
            if found is None or found.lower() != req.value.lower():
                wrong_value.append(f'{req.key} (expected "{req.value}", found "{found if found is not None else match}")')
    if missing or wrong_value:
        parts: list[str] = []
        if missing:
            parts.append(f"Missing tags: {', '.join(missing)}")
        if wrong_value:
            parts.append(f"Wrong values: {'; '.join(wrong_value)}")
        return non_compliant(". ".join(parts))
    expected = ", ".join(f"{req.key}:{req.value or '*'}" for req in required)
    return compliant(f"All required tags present: {expected}")


@leaf_check(ApprovedRegions)
def check_approved_regions(
    condition: ApprovedRegions, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    if not condition.approved_regions:
        return not_applicable("No approved regions configured for this rule.")
    if not resource.region:
        return not_applicable("Resource has no region information.")
    if resource.region in condition.approved_regions:
        return compliant(f'Region "{resource.region}" is approved.')
    return non_compliant(
        f'Region "{resource.region}" is not in the approved list: {", ".join(condition.approved_regions)}.'
    )

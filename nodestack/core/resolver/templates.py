"""
Installation templates: named, pre-configured profile selections.

Templates live in the catalog next to profiles. This module validates
them against the resolver, merges their configuration, and ranks them
for a given machine and use case.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from nodestack.core.errors import ValidationError
from nodestack.core.models.profile import Catalog, Resources, Template
from nodestack.core.resolver.dependency_resolver import resolve

logger = logging.getLogger(__name__)

# Settings switched on by a template's developer_mode flag
DEVELOPER_MODE_CONFIG = {
    "LOG_LEVEL": "debug",
    "ENABLE_PORTAINER": "true",
    "ENABLE_PGADMIN": "true",
    "ENABLE_LOG_ACCESS": "true",
}


class TemplateCheck(BaseModel):
    template_id: str
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class TemplateRecommendation(BaseModel):
    template: Template
    score: int = 0
    suitability: str = "suitable"    # suitable, insufficient
    reasons: list[str] = Field(default_factory=list)
    recommended: bool = False


def get_template(catalog: Catalog, template_id: str) -> Template:
    template = catalog.templates.get(template_id)
    if template is None:
        raise ValidationError(f"Template '{template_id}' not found")
    return template


def validate_template(catalog: Catalog, template_id: str) -> TemplateCheck:
    """Check that a template's profiles exist and resolve cleanly."""
    template = catalog.templates.get(template_id)
    if template is None:
        return TemplateCheck(template_id=template_id, valid=False,
                             errors=[f"Template '{template_id}' not found"])

    errors = [
        f"Template references unknown profile: {pid}"
        for pid in template.profiles
        if pid not in catalog.profiles
    ]
    warnings: list[str] = []
    if not errors:
        resolution = resolve(catalog, template.profiles)
        errors.extend(issue.message for issue in resolution.errors)
        warnings.extend(issue.message for issue in resolution.warnings)

    return TemplateCheck(template_id=template_id, valid=not errors, errors=errors, warnings=warnings)


def apply_template(
    catalog: Catalog,
    template_id: str,
    base_config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Merge a template's configuration over ``base_config``.

    Template values win. Developer-mode templates also switch on the
    debugging toggles in DEVELOPER_MODE_CONFIG.
    """
    template = get_template(catalog, template_id)
    merged = {**(base_config or {}), **template.config}
    if template.developer_mode:
        merged.update(DEVELOPER_MODE_CONFIG)
    logger.debug("Applied template %s (%d keys)", template_id, len(merged))
    return merged


def recommend_templates(
    catalog: Catalog,
    system: Resources,
    use_case: str | None = None,
) -> list[TemplateRecommendation]:
    """Score every template against the machine and use case, best first.

    Memory, CPU and disk each earn more for meeting the recommended
    figure than the minimum; memory below the minimum marks the template
    insufficient. A matching use case is worth the most.
    """
    results = []
    for template in catalog.templates.values():
        minimum = template.resources
        ideal = template.recommended or minimum
        score = 0
        suitability = "suitable"
        reasons: list[str] = []

        if system.ram_gb >= ideal.ram_gb:
            score += 3
            reasons.append("Meets recommended memory requirements")
        elif system.ram_gb >= minimum.ram_gb:
            score += 1
            reasons.append("Meets minimum memory requirements")
        else:
            suitability = "insufficient"
            reasons.append(f"Requires {minimum.ram_gb:g}GB RAM (you have {system.ram_gb:g}GB)")

        if system.cpu_cores >= ideal.cpu_cores:
            score += 2
        elif system.cpu_cores >= minimum.cpu_cores:
            score += 1

        if system.disk_gb >= ideal.disk_gb:
            score += 2
        elif system.disk_gb >= minimum.disk_gb:
            score += 1

        if use_case and template.use_case == use_case:
            score += 5
            reasons.append("Perfect match for your use case")

        if use_case == "personal" and template.category == "beginner":
            score += 2
            reasons.append("Beginner-friendly")

        results.append(TemplateRecommendation(
            template=template,
            score=score,
            suitability=suitability,
            reasons=reasons,
            recommended=score >= 5 and suitability == "suitable",
        ))

    # Stable: ties keep catalog order
    results.sort(key=lambda r: r.score, reverse=True)
    return results

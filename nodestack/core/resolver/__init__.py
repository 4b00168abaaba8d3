"""Profile resolution and installation templates."""

from nodestack.core.resolver.dependency_resolver import (
    aggregate_resources,
    find_cycles,
    resolve,
    startup_plan,
)
from nodestack.core.resolver.templates import (
    apply_template,
    recommend_templates,
    validate_template,
)

__all__ = [
    "aggregate_resources",
    "apply_template",
    "find_cycles",
    "recommend_templates",
    "resolve",
    "startup_plan",
    "validate_template",
]

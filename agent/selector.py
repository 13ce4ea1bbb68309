"""Label selector evaluation.

Pure functions, no cluster access. Semantics follow Kubernetes
metav1.LabelSelector: matchLabels and matchExpressions are ANDed, and an
empty selector matches everything.
"""

from __future__ import annotations

from agent.errors import SelectorError
from agent.models import LabelSelector, LabelSelectorRequirement

OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


def _validate(requirement: LabelSelectorRequirement) -> None:
    if not requirement.key:
        raise SelectorError("selector requirement has an empty key")
    if requirement.operator not in OPERATORS:
        raise SelectorError(
            f"{requirement.operator!r} is not a valid selector operator "
            f"(expected one of {', '.join(OPERATORS)})"
        )
    if requirement.operator in ("In", "NotIn") and not requirement.values:
        raise SelectorError(
            f"values must be non-empty for operator {requirement.operator} "
            f"on key {requirement.key!r}"
        )
    if requirement.operator in ("Exists", "DoesNotExist") and requirement.values:
        raise SelectorError(
            f"values must be empty for operator {requirement.operator} "
            f"on key {requirement.key!r}"
        )


def _requirement_matches(requirement: LabelSelectorRequirement, labels: dict[str, str]) -> bool:
    present = requirement.key in labels
    if requirement.operator == "In":
        return present and labels[requirement.key] in requirement.values
    if requirement.operator == "NotIn":
        return not present or labels[requirement.key] not in requirement.values
    if requirement.operator == "Exists":
        return present
    return not present


def matches(selector: LabelSelector | None, labels: dict[str, str]) -> bool:
    """Decide whether a set of labels is selected.

    Args:
        selector: The selector to evaluate. None or empty selects everything.
        labels: Labels of the candidate object (typically the node).

    Raises:
        SelectorError: If the selector is malformed.
    """
    if selector is None:
        return True

    for requirement in selector.match_expressions:
        _validate(requirement)

    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False

    return all(
        _requirement_matches(requirement, labels)
        for requirement in selector.match_expressions
    )


def as_label_map(selector: LabelSelector | None) -> dict[str, str]:
    """Reduce a selector to a plain equality label map.

    Only matchLabels and single-valued ``In`` expressions can be expressed
    this way; anything else raises.

    Raises:
        SelectorError: If the selector cannot be reduced to equalities.
    """
    if selector is None:
        return {}

    result = dict(selector.match_labels)
    for requirement in selector.match_expressions:
        _validate(requirement)
        if requirement.operator != "In" or len(requirement.values) != 1:
            raise SelectorError(
                f"{requirement.operator} expression on {requirement.key!r} "
                "cannot be converted to a label map"
            )
        value = requirement.values[0]
        if requirement.key in result and result[requirement.key] != value:
            raise SelectorError(
                f"conflicting values for key {requirement.key!r}: "
                f"{result[requirement.key]!r} and {value!r}"
            )
        result[requirement.key] = value
    return result


def format_label_map(labels: dict[str, str]) -> str:
    """Format an equality map as an API label-selector string (k1=v1,k2=v2)."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))

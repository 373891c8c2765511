"""Label selector conversion.

The API server evaluates selectors; the controller only renders a
LabelSelector into the `labelSelector` query syntax and rejects selectors the
server would refuse. A malformed selector raises SelectorError, which is
fatal to the reconciliation cycle.
"""

import re

from imagepolicy_controller.core.models import LabelSelector, LabelSelectorRequirement
from imagepolicy_controller.errors import SelectorError

_NAME_PATTERN = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")
_DNS_SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

_SET_OPERATORS = {"In": "in", "NotIn": "notin"}
_EXISTENCE_OPERATORS = {"Exists", "DoesNotExist"}


def _validate_key(key: str) -> None:
    prefix, sep, name = key.rpartition("/")
    if sep and (not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN_PATTERN.match(prefix)):
        raise SelectorError(f"invalid label key prefix in {key!r}")
    if not name or len(name) > 63 or not _NAME_PATTERN.match(name):
        raise SelectorError(f"invalid label key {key!r}")


def _validate_value(key: str, value: str) -> None:
    if len(value) > 63 or not _NAME_PATTERN.match(value):
        raise SelectorError(f"invalid label value {value!r} for key {key!r}")


def _render_requirement(requirement: LabelSelectorRequirement) -> str:
    key = requirement.key
    _validate_key(key)

    if requirement.operator in _SET_OPERATORS:
        if not requirement.values:
            raise SelectorError(f"operator {requirement.operator} on {key!r} requires at least one value")
        for value in requirement.values:
            _validate_value(key, value)
        values = ",".join(sorted(requirement.values))
        return f"{key} {_SET_OPERATORS[requirement.operator]} ({values})"

    if requirement.operator in _EXISTENCE_OPERATORS:
        if requirement.values:
            raise SelectorError(f"operator {requirement.operator} on {key!r} does not take values")
        return key if requirement.operator == "Exists" else f"!{key}"

    raise SelectorError(f"unsupported selector operator {requirement.operator!r} on {key!r}")


def to_selector_string(selector: LabelSelector | None) -> str | None:
    """Render a LabelSelector into the API server's query syntax.

    Args:
        selector: The selector from the policy spec, or None.

    Returns:
        A selector string such as "app=web,tier in (a,b)", an empty string
        for an empty selector (matches everything), or None when no selector
        was given.

    Raises:
        SelectorError: If a key, value, or operator is invalid.
    """
    if selector is None:
        return None

    parts: list[str] = []
    for key in sorted(selector.match_labels):
        value = selector.match_labels[key]
        _validate_key(key)
        _validate_value(key, value)
        parts.append(f"{key}={value}")

    parts.extend(_render_requirement(requirement) for requirement in selector.match_expressions)
    return ",".join(parts)

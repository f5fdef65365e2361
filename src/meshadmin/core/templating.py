"""
Placeholder substitution for notification templates.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

MISSING_VALUE = "N/A"

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


def render_template(
    template: str, values: Mapping[str, Any], *, missing: str = MISSING_VALUE
) -> str:
    """
    Replace ``{name}`` placeholders with entries from ``values``.

    Substitution is a single pass, so values containing braces are never
    expanded again.  Unknown, ``None`` or empty values render as ``missing``.
    """

    def _substitute(match: re.Match[str]) -> str:
        value = values.get(match.group(1).strip())
        if value is None or value == "":
            return missing
        return str(value)

    return _PLACEHOLDER.sub(_substitute, template)


__all__ = ["MISSING_VALUE", "render_template"]

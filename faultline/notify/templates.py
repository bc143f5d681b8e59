"""``{{var}}`` template rendering for notification subjects and bodies."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from faultline.core.types import NotificationRequest, NotificationTemplate

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render(text: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``{{name}}`` placeholders. Unknown names are left as written."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return str(variables[name])

    return _PLACEHOLDER.sub(_sub, text)


def placeholders(text: str) -> list[str]:
    """Names referenced by *text*, in order of first appearance."""
    seen: list[str] = []
    for name in _PLACEHOLDER.findall(text):
        if name not in seen:
            seen.append(name)
    return seen


def render_request(
    request: NotificationRequest,
    template: NotificationTemplate,
) -> NotificationRequest:
    """Return a copy of *request* with subject and message rendered from *template*.

    Variables come from the request's metadata.
    """
    return request.model_copy(
        update={
            "subject": render(template.subject, request.metadata),
            "message": render(template.body_template, request.metadata),
        },
        deep=True,
    )

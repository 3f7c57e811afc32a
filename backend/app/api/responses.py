"""Success envelope shared by every route: ``{success, data, message?, warnings?}``."""

from __future__ import annotations

from typing import Any


def ok(data: Any = None, *, message: str | None = None, warnings: dict[str, str] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    if warnings:
        body["warnings"] = [{"field": field, "message": text} for field, text in warnings.items()]
    return body

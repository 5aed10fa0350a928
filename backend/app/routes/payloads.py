from __future__ import annotations

from typing import Any

from fastapi import Request

from backend.app.errors import BadRequest


async def read_json_object(request: Request) -> dict[str, Any]:
    """Parse the request body as a JSON object.

    Malformed JSON propagates as ``ValueError`` so that the route's
    catch-all answers 500; a valid non-object body is a 400.
    """
    body = await request.json()
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body

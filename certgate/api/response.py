#!/usr/bin/env python3
#
# certgate/api/response.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Common API response helpers."""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse


def ok_response(
	*,
	message: str | None = None,
	data: Any = None,
	**extra: Any,
) -> dict[str, Any]:
	"""Build a normalized success response with a stable ``status`` field."""
	payload: dict[str, Any] = {"status": "ok"}
	if message is not None:
		payload["message"] = message
	if data is not None:
		payload["data"] = data
	if extra:
		payload.update(extra)
	return payload


def error_response(
	status_code: int,
	*,
	message: str,
	**extra: Any,
) -> JSONResponse:
	"""Build a normalized error response (``status: error``) with ``status_code``."""
	payload: dict[str, Any] = {"status": "error", "message": message}
	if extra:
		payload.update(extra)
	return JSONResponse(status_code=status_code, content=payload)

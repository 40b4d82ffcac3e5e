#!/usr/bin/env python3
#
# certgate/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rate limiting configuration using slowapi."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limit presets
RATE_LIMIT_CHALLENGE = "120/minute"   # ACME validators retry from several vantage points
RATE_LIMIT_API = "60/minute"          # Status and lookup endpoints
RATE_LIMIT_ISSUE = "10/minute"        # May trigger a full ACME issuance

# Global limiter instance
limiter = Limiter(key_func=get_remote_address)

__all__ = [
	"RATE_LIMIT_API",
	"RATE_LIMIT_CHALLENGE",
	"RATE_LIMIT_ISSUE",
	"limiter",
]

#!/usr/bin/env python3
#
# certgate/storage/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate and challenge storage backends."""

from .base import CHALLENGE_TTL, CertStorage, is_valid_domain, is_valid_token, normalize_domain
from .files import FileStorage
from .memory import MemoryStorage

__all__ = [
	"CHALLENGE_TTL",
	"CertStorage",
	"FileStorage",
	"MemoryStorage",
	"is_valid_domain",
	"is_valid_token",
	"normalize_domain",
]

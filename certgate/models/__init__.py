#!/usr/bin/env python3
#
# certgate/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic models for CertGate."""

from .certificates import (
	DOMAIN_PATTERN,
	CertificateInfo,
	IssueRequest,
	RenewalStatus,
)

__all__ = [
	"DOMAIN_PATTERN",
	"CertificateInfo",
	"IssueRequest",
	"RenewalStatus",
]

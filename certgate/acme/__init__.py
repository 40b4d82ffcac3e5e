#!/usr/bin/env python3
#
# certgate/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME v2 client and the single-domain issuance engine."""

from .client import ACMEClient, Http01Challenge
from .engine import AcmeSettings, IssuanceEngine, IssueResult, challenge_token
from .errors import (
	AcmeError,
	AcmeNetworkError,
	AcmeProtocolError,
	PackagingError,
	ValidationTimeoutError,
)

__all__ = [
	# Client
	"ACMEClient",
	"Http01Challenge",
	# Engine
	"AcmeSettings",
	"IssuanceEngine",
	"IssueResult",
	"challenge_token",
	# Errors
	"AcmeError",
	"AcmeNetworkError",
	"AcmeProtocolError",
	"PackagingError",
	"ValidationTimeoutError",
]

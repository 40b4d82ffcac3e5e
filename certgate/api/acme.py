#!/usr/bin/env python3
#
# certgate/api/acme.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""HTTP-01 responder and certificate API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from fastapi.responses import PlainTextResponse

from ..certs.cache import CertificateManager
from ..models.certificates import DOMAIN_PATTERN, CertificateInfo, IssueRequest, RenewalStatus
from ..storage.base import CertStorage, is_valid_token
from ..tasks.renewal import RenewalScheduler
from ..utils.config import Config
from ..utils.deps import get_config, get_manager, get_scheduler, get_storage
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_CHALLENGE, RATE_LIMIT_ISSUE, limiter
from ..utils.time import utcnow
from .response import error_response, ok_response

_log = logging.getLogger(__name__)

# Served at the site root, where ACME validators look
challenge_router = APIRouter(tags=["acme"])

router = APIRouter(prefix="/certificates", tags=["certificates"])


# ---------------------------------------------------------------------------
# HTTP-01 challenge responder
# ---------------------------------------------------------------------------

@challenge_router.get("/.well-known/acme-challenge/{token}", response_class=PlainTextResponse)
@limiter.limit(RATE_LIMIT_CHALLENGE)
async def serve_challenge(
	request: Request,
	token: str,
	storage: CertStorage = Depends(get_storage),
) -> PlainTextResponse:
	"""Answer an ACME HTTP-01 validation request with the key authorization."""
	# Validate token format before touching storage
	if not is_valid_token(token):
		raise HTTPException(status_code=404, detail="Invalid token format")

	key_auth = await storage.get_challenge_response(token)
	if not key_auth:
		_log.info("ACME challenge miss token=%s client=%s", token, request.client.host if request.client else "-")
		raise HTTPException(status_code=404, detail="Challenge not found")

	_log.info("ACME challenge served token=%s", token)
	return PlainTextResponse(key_auth)


# ---------------------------------------------------------------------------
# Certificate API
# ---------------------------------------------------------------------------

def _info(domain: str, manager: CertificateManager, handle) -> CertificateInfo:
	return CertificateInfo.from_handle(
		domain,
		handle,
		now=utcnow(),
		needs_renewal=manager.needs_renewal(handle),
	)


@router.get("/renewal-check")
@limiter.limit(RATE_LIMIT_API)
async def check_renewals(
	request: Request,
	cfg: Config = Depends(get_config),
	manager: CertificateManager = Depends(get_manager),
	scheduler: Optional[RenewalScheduler] = Depends(get_scheduler),
) -> dict:
	"""Report which managed certificates are inside the renewal window."""
	domains = list(scheduler.domains) if scheduler else list(cfg.managed_domains)
	now = utcnow()

	statuses: list[RenewalStatus] = []
	for domain in domains:
		handle = await manager.cached_certificate(domain)
		state = scheduler.states.get(domain) if scheduler else None
		status = RenewalStatus(domain=domain, pending=manager.is_pending(domain))
		if handle is not None:
			status.exists = True
			status.expires_at = handle.not_after.isoformat()
			status.days_until_expiry = handle.remaining(now).days
			status.needs_renewal = manager.needs_renewal(handle, now)
		if state is not None:
			status.last_attempt = state.last_attempt.isoformat() if state.last_attempt else None
			status.last_success = state.last_success.isoformat() if state.last_success else None
			status.fail_count = state.fail_count
			status.last_error = state.last_error
		statuses.append(status)

	due = [s for s in statuses if s.needs_renewal]
	return ok_response(data={
		"total_certificates": len([s for s in statuses if s.exists]),
		"needs_renewal_count": len(due),
		"renewal_period_days": manager.renewal_period.days,
		"domains": statuses,
		"scheduler": {
			"running": bool(scheduler and scheduler.is_running),
			"interval_seconds": scheduler.interval_seconds if scheduler else None,
			"consecutive_failures": scheduler.consecutive_failures if scheduler else 0,
		},
	})


@router.get("/{domain}")
@limiter.limit(RATE_LIMIT_API)
async def get_certificate(
	request: Request,
	domain: str = Path(..., min_length=1, max_length=253, pattern=DOMAIN_PATTERN),
	manager: CertificateManager = Depends(get_manager),
) -> dict:
	"""Show the stored certificate for a domain. Never issues."""
	domain = domain.lower()
	handle = await manager.cached_certificate(domain)
	if handle is None:
		raise HTTPException(status_code=404, detail="Certificate not found")
	return ok_response(data=_info(domain, manager, handle))


@router.post("/request")
@limiter.limit(RATE_LIMIT_ISSUE)
async def request_certificate(
	request: Request,
	req: IssueRequest,
	manager: CertificateManager = Depends(get_manager),
):
	"""Return a valid certificate for the domain, issuing one when needed.

	Before calling this, the domain must resolve to this server and port 80
	must reach the ``/.well-known/acme-challenge/`` route.
	"""
	_log.info("Certificate requested for %s", req.domain)
	handle = await manager.get_certificate(req.domain)
	if handle is None:
		failure = manager.last_failure(req.domain)
		return error_response(
			502,
			message=f"Could not obtain a certificate for {req.domain}",
			domain=req.domain,
			category=failure.category if failure else "unknown",
			detail=str(failure) if failure else None,
		)

	return ok_response(
		message="Certificate available",
		domain=req.domain,
		data=_info(req.domain, manager, handle),
	)

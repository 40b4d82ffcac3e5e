#!/usr/bin/env python3
#
# certgate/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""CertGate - ACME certificate lifecycle manager."""

from .main import create_app

__all__ = ["create_app"]

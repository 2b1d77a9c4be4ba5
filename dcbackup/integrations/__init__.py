# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin endpoints.
"""

from dcbackup.integrations.fastapi import (
    backup_lifespan,
    register_backup_routes,
    verify_api_key,
)

__all__ = [
    "backup_lifespan",
    "register_backup_routes",
    "verify_api_key",
]

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request

from core.settings import Settings, get_settings
from files.instance import S3Uplink
from providers.factory import Providers, build_ledger

log = logging.getLogger(__name__)


def providers_from_request(request: Request) -> Providers:
    """
    Canonical provider accessor for ALL routers.

    Providers are attached once during app startup as request.app.state.providers.
    """
    try:
        return request.app.state.providers
    except Exception as exc:
        raise RuntimeError("Providers not initialized on app.state (startup/lifespan not executed).") from exc


async def init_providers(app: FastAPI, settings: Optional[Settings] = None) -> Providers:
    """
    Canonical provider initialization.
    Called once during app lifespan. Builds the configured instance (if any),
    runs its init() and attaches Providers onto app.state.
    """
    settings = settings or get_settings()
    providers = Providers(settings=settings)

    cfg = settings.instance
    if cfg is None:
        log.warning("[Startup] S3U_NAME not set; no upload instance configured")
    else:
        instance = S3Uplink(
            cfg,
            build_ledger(cfg, settings.ledger),
            provisioning=settings.provisioning,
            # embedding apps pass their own predicate; the standalone service
            # relies on the bearer token gate in front of the routes
            on_check_permissions=_authenticated_only,
        )
        await instance.init()
        providers.instances[cfg.name] = instance

    app.state.providers = providers
    return providers


def _authenticated_only(_subject, _action, requester_id, _context) -> bool:
    settings = get_settings()
    if not settings.auth.enabled:
        return True
    return bool(requester_id)

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..app import CredentialRelay, build_relay
from ..core.api_models import CredentialRequest, HealthData, ProviderStatusItem, SuccessResponse, SwitchTargetRequest
from ..core.errors import ErrorCode, http_error
from ..core.logging import get_logger
from ..core.models import ConnectionTarget
from ..core.observability import RequestContextMiddleware, metrics_snapshot
from ..core.response import ok
from ..sources.registry import normalize

logger = get_logger(__name__)


def _provider_id(raw: str) -> str:
    pid = normalize(raw)
    if not pid or pid.startswith(".") or "/" in pid or "\\" in pid:
        raise http_error(400, ErrorCode.VALIDATION, f"invalid provider id '{raw}'")
    return pid


openapi_tags = [
    {"name": "Health", "description": "Liveness and process-local metrics"},
    {"name": "Providers", "description": "Locally stored provider credentials"},
    {"name": "Connection", "description": "Executor connection status and manual actions"},
]


# PUBLIC_INTERFACE
def create_app(relay: Optional[CredentialRelay] = None, run_startup: bool = True) -> FastAPI:
    """Create the control API around a wired CredentialRelay."""
    relay = relay or build_relay()
    settings = relay.settings

    app = FastAPI(
        title=settings.api.API_TITLE,
        description=settings.api.API_DESCRIPTION,
        version=settings.api.API_VERSION,
        openapi_tags=openapi_tags,
    )
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Correlation ID / request context middleware
    app.add_middleware(RequestContextMiddleware, logger=logger)

    if run_startup:
        @app.on_event("startup")
        async def _on_startup() -> None:
            await relay.start()

        @app.on_event("shutdown")
        async def _on_shutdown() -> None:
            await relay.stop()

    # PUBLIC_INTERFACE
    @app.get(
        "/health",
        summary="Health Check",
        tags=["Health"],
        response_model=SuccessResponse[HealthData],  # type: ignore[type-arg]
    )
    def health_check():
        """Service liveness plus the executor connection state."""
        return ok({"message": "Healthy", "connection": relay.connection.state.value})

    # PUBLIC_INTERFACE
    @app.get(
        "/_metrics",
        summary="Metrics (basic)",
        description="Basic in-process counters for observability.",
        tags=["Health"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    def metrics():
        """Return basic service metrics (process-local) for quick visibility."""
        return ok(metrics_snapshot())

    # PUBLIC_INTERFACE
    @app.get(
        "/providers",
        summary="Stored providers",
        description="Authentication, expiry and last refresh error for each locally stored provider.",
        tags=["Providers"],
        response_model=SuccessResponse[List[ProviderStatusItem]],  # type: ignore[type-arg]
    )
    def list_providers():
        items = [
            ProviderStatusItem(provider_id=pid, name=relay.catalog.display_name(pid), **st.model_dump())
            for pid, st in relay.store.status().items()
        ]
        return ok(items, meta={"count": len(items)})

    # PUBLIC_INTERFACE
    @app.delete(
        "/providers/{provider_id}",
        summary="Log out of a provider",
        tags=["Providers"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    def remove_provider(provider_id: str):
        """Remove the stored credential; removing an absent provider succeeds."""
        pid = _provider_id(provider_id)
        existed = relay.store.get(pid) is not None
        relay.store.remove(pid)
        relay.registry.invalidate(pid)
        return ok({"provider_id": pid, "removed": existed})

    # PUBLIC_INTERFACE
    @app.post(
        "/providers/{provider_id}/dismiss",
        summary="Dismiss a provider's refresh error",
        tags=["Providers"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    def dismiss_provider_error(provider_id: str):
        pid = _provider_id(provider_id)
        if relay.store.get(pid) is None:
            raise http_error(404, ErrorCode.NOT_FOUND, f"no stored credential for '{pid}'")
        relay.store.dismiss_error(pid)
        return ok({"provider_id": pid, "dismissed": True})

    # PUBLIC_INTERFACE
    @app.get(
        "/tokens/available",
        summary="Credentials that could be supplied",
        description="Wire-level token names across all sources; nothing is resolved.",
        tags=["Providers"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    async def tokens_available():
        listings = await relay.registry.list_all_providers()
        names = await relay.registry.list_all_token_names()
        return ok(
            {
                "tokens_available": names,
                "providers": [listing.to_wire() for listing in listings],
            }
        )

    # PUBLIC_INTERFACE
    @app.get(
        "/connection",
        summary="Executor connection status",
        tags=["Connection"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    def connection_info():
        return ok(relay.connection.info())

    # PUBLIC_INTERFACE
    @app.post(
        "/connection/retry",
        summary="Manual reconnect",
        description="Resume after reconnect attempts were exhausted, or reconnect immediately.",
        tags=["Connection"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    async def connection_retry():
        if not relay.connection.credential:
            raise http_error(409, ErrorCode.CONNECTION_LOST, "no executor credential configured")
        await relay.connection.retry()
        return ok(relay.connection.info())

    # PUBLIC_INTERFACE
    @app.post(
        "/connection/switch",
        summary="Switch executor target",
        tags=["Connection"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    async def connection_switch(body: SwitchTargetRequest):
        if body.type == "localhost":
            target = ConnectionTarget(type="localhost", url=body.url or relay.connection.local_url, name=body.name or "localhost")
        elif body.type == "remote" and body.url:
            target = ConnectionTarget(type="remote", url=body.url, name=body.name, remote_id=body.remote_id)
        else:
            raise http_error(400, ErrorCode.VALIDATION, "a remote target needs a url")
        if not target.url.startswith(("ws://", "wss://")):
            raise http_error(400, ErrorCode.VALIDATION, "target url must be ws:// or wss://")
        await relay.connection.switch_target(target)
        return ok(relay.connection.info())

    # PUBLIC_INTERFACE
    @app.put(
        "/connection/credential",
        summary="Set or clear the executor credential",
        tags=["Connection"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    )
    async def connection_credential(body: CredentialRequest):
        await relay.connection.set_credential(body.credential)
        data: Dict[str, Any] = relay.connection.info()
        return ok(data)

    return app

# health/router.py
from fastapi import APIRouter, Request

from core.providers import providers_from_request

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    # Keep this super simple and always unauthenticated
    return {"ok": True}


@router.get("/health/instances")
def health_instances(request: Request):
    """
    Reports every configured instance:
      - initialized: init() completed (bucket resolved, provisioning done)
      - bucket: physical bucket name, null until initialized
      - provisioned: reconciler ran during startup
    """
    try:
        providers = providers_from_request(request)
    except RuntimeError as e:
        return {"ok": False, "instances": [], "error": str(e)}

    out = []
    for name, uplink in sorted(providers.instances.items()):
        out.append(
            {
                "name": name,
                "initialized": uplink.initialized,
                "bucket": uplink.bucket_name,
                "region": uplink.config.region,
                "provisioned": uplink.provisioning_state is not None,
            }
        )
    return {"ok": all(x["initialized"] for x in out), "instances": out}

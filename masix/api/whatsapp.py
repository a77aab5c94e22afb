import logging

from fastapi import APIRouter, Request

from masix.gateway.whatsapp import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

router = APIRouter(tags=["whatsapp"])


@router.post("/whatsapp/ingress")
async def whatsapp_ingress(request: Request) -> dict:
    """Accept one ``whatsapp.v1`` event. The answer never reveals whether it was kept."""
    runtime = getattr(request.app.state, "runtime", None)
    adapter = runtime.whatsapp if runtime is not None else None
    if adapter is None:
        logger.warning("WhatsApp ingress called but the channel is disabled")
        return {"ok": True}
    body = await request.body()
    adapter.accept(body, request.headers.get(SIGNATURE_HEADER))
    return {"ok": True}

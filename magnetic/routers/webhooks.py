from fastapi import APIRouter, Request

from magnetic.services import entitlements

router = APIRouter()


@router.post("/hotmart")
async def hotmart_webhook(request: Request):
    """Hotmart purchase events. Always 200 so the provider does not retry; outcome is in `status`."""
    body = await request.body()
    return await entitlements.handle_webhook(body, request.headers)

"""Fee schedule endpoint. Public, no auth required."""

from fastapi import APIRouter

from agent_resolve.schemas.common import Envelope
from agent_resolve.services.credit import get_fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees", response_model=Envelope[dict])
async def fee_schedule() -> Envelope[dict]:
    """Current credit charges. Check this before filing a paid dispute or escalating."""
    return Envelope(data=get_fee_schedule())

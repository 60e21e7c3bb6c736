# services/public_site/app/routers/contact.py
from fastapi import APIRouter, Body, HTTPException, Request
import logging

from core.errors import RateLimitExceeded
from core.mailer import ContactMailer, ContactRateLimiter
from core.models import ApiResponse, ContactRequest

logger = logging.getLogger("PCMS_Core").getChild("PublicSite").getChild("ContactRouter")

router = APIRouter()


@router.post("", response_model=ApiResponse)
async def submit_contact(request: Request, payload: ContactRequest = Body(...)):
    """Forwards a contact-form enquiry to the site owner by email."""
    limiter: ContactRateLimiter = request.app.state.contact_limiter
    mailer: ContactMailer = request.app.state.mailer
    try:
        limiter.check(payload.email)
    except RateLimitExceeded as e:
        raise HTTPException(status_code=e.status_code, detail=e.user_message,
                            headers={"Retry-After": str(e.retry_after)})

    result = await mailer.send(payload)
    if not result.success:
        logger.error(f"Contact enquiry from {payload.email} not delivered: {result.error}")
        raise HTTPException(status_code=502, detail="Your message could not be sent. Please try again later.")
    return ApiResponse(status="success", data={"message_id": result.message_id},
                       message="Thank you! Your message has been sent.")

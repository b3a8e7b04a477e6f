import logging
import os

import httpx

logger = logging.getLogger("uvicorn.error")

EMAILJS_SEND_URL = os.getenv("EMAILJS_SEND_URL", "https://api.emailjs.com/api/v1.0/email/send")
EMAILJS_TIMEOUT_SECONDS = float(os.getenv("EMAILJS_TIMEOUT_SECONDS", "10"))
WELCOME_MESSAGE = "Welcome to Decision Recovery. One decision per day."


def _emailjs_credentials() -> dict[str, str]:
    return {
        "service_id": os.getenv("EMAILJS_SERVICE_ID", "").strip(),
        "template_id": os.getenv("EMAILJS_TEMPLATE_ID", "").strip(),
        "user_id": os.getenv("EMAILJS_PUBLIC_KEY", "").strip(),
        "accessToken": os.getenv("EMAILJS_PRIVATE_KEY", "").strip(),
    }


async def send_welcome_email(to_email: str, name: str) -> bool:
    """Fire-and-forget welcome email. Logs and returns False on any failure."""
    credentials = _emailjs_credentials()
    missing = [key for key, value in credentials.items() if not value]
    if missing:
        logger.warning("welcome_email_skipped reason=credentials_missing missing=%s to=%s", ",".join(missing), to_email)
        return False

    payload = {
        **credentials,
        "template_params": {"to_email": to_email, "to_name": name, "message": WELCOME_MESSAGE},
    }
    try:
        async with httpx.AsyncClient(timeout=EMAILJS_TIMEOUT_SECONDS) as client:
            response = await client.post(EMAILJS_SEND_URL, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("welcome_email_failed to=%s detail=%s", to_email, str(exc)[:220])
        return False
    logger.info("welcome_email_sent to=%s", to_email)
    return True

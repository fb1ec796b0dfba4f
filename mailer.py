import logging
import os
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)

EMAILJS_API_URL = "https://api.emailjs.com/api/v1.0/email/send"


class EmailDeliveryError(Exception):
    pass


class EmailJSMailer:
    """
    Sends templated email through the EmailJS REST API.

    `send(template, variables)` takes a logical template name ("otp" or
    "link") and raises EmailDeliveryError when the provider rejects it.
    """

    def __init__(self, service_id: Optional[str] = None, public_key: Optional[str] = None,
                 private_key: Optional[str] = None, templates: Optional[Dict[str, str]] = None,
                 timeout: int = 10):
        self.service_id = service_id or os.getenv("EMAILJS_SERVICE_ID")
        self.public_key = public_key or os.getenv("EMAILJS_PUBLIC_KEY")
        self.private_key = private_key or os.getenv("EMAILJS_PRIVATE_KEY")
        self.templates = templates or {
            "otp": os.getenv("EMAILJS_OTP_TEMPLATE_ID"),
            "link": os.getenv("EMAILJS_LINK_TEMPLATE_ID"),
        }
        self.timeout = timeout

    def send(self, template: str, variables: Dict[str, str]) -> None:
        template_id = self.templates.get(template)
        if not (self.service_id and self.public_key and template_id):
            raise EmailDeliveryError(f"EmailJS is not configured for template '{template}'")

        payload = {
            "service_id": self.service_id,
            "template_id": template_id,
            "user_id": self.public_key,
            "accessToken": self.private_key,
            "template_params": variables,
        }
        try:
            res = requests.post(EMAILJS_API_URL, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise EmailDeliveryError(str(exc)) from exc
        if res.status_code != 200:
            raise EmailDeliveryError(f"EmailJS error {res.status_code}: {res.text[:200]}")
        logger.debug("Sent '%s' email", template)

from postmarker.core import PostmarkClient
import os
import logging

logger = logging.getLogger(__name__)

DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "no-reply@example.com")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

PLAN_LABELS = {
    "lifetime": "Lifetime Access",
    "starter_monthly": "Starter (Monthly)",
    "starter_yearly": "Starter (Yearly)",
    "pro_monthly": "Pro (Monthly)",
    "pro_yearly": "Pro (Yearly)",
}


class NotificationService:
    """Transactional email through Postmark.

    Sends report delivery as a boolean; a failed send never raises into the
    caller's entitlement writes.
    """

    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not delivered")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_welcome_credentials(
        self,
        recipient: str,
        name: str,
        temp_password: str,
        plan: str,
    ) -> bool:
        """Email the first (temporary) credential. Returns True only if Postmark accepted it."""
        plan_label = PLAN_LABELS.get(plan, plan)
        login_url = f"{FRONTEND_URL}/login"
        subject = f"Welcome - your {plan_label} account is ready"
        text_body = (
            f"Hi {name or 'there'},\n\n"
            f"Thanks for your purchase of {plan_label}.\n\n"
            f"Email: {recipient}\n"
            f"Temporary password: {temp_password}\n\n"
            f"Sign in at {login_url} - you will be asked to choose a new password.\n"
        )
        html_body = (
            f"<p>Hi {name or 'there'},</p>"
            f"<p>Thanks for your purchase of <strong>{plan_label}</strong>.</p>"
            f"<p>Email: {recipient}<br>Temporary password: <code>{temp_password}</code></p>"
            f"<p><a href=\"{login_url}\">Sign in</a> - you will be asked to choose a new password.</p>"
        )

        if not self.client:
            logger.info(f"[DEV MODE] Welcome email logged (not sent) to {recipient}")
            return False

        try:
            response = self.client.emails.send(
                From=DEFAULT_SENDER,
                To=recipient,
                Subject=subject,
                HtmlBody=html_body,
                TextBody=text_body,
                Tag="welcome-credentials",
            )
            logger.info(f"Welcome email sent to {recipient}: {response['MessageID']}")
            return True
        except Exception as e:
            logger.error(f"Failed to send welcome email to {recipient}: {e}")
            return False


notification_service = NotificationService()

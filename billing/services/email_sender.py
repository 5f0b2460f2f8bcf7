import base64
import html
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol
import httpx
from billing.core.config import settings
from billing.core.exceptions import NotificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportEmail:
    to: str
    user_name: str
    period_start: str
    period_end: str
    pdf: bytes
    organization_name: Optional[str] = None


class NotificationDispatcher(Protocol):
    async def send_report_email(self, email: ReportEmail) -> Optional[str]: ...


def build_email_payload(email: ReportEmail, from_email: str, from_name: str) -> dict:
    period = f"{email.period_start} to {email.period_end}"
    user_name = html.escape(email.user_name)
    account = html.escape(email.organization_name or "your account")
    html_content = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h1 style="color: #333; border-bottom: 2px solid #007bff; padding-bottom: 10px;">Weekly Report</h1>
          <p>Hi {user_name},</p>
          <p>Your weekly report for {account} covering the period from {period} is ready.</p>
          <p>The detailed report is attached as a PDF file.</p>
          <div style="background-color: #f8f9fa; padding: 20px; border-radius: 5px; margin: 20px 0;">
            <h3 style="margin-top: 0; color: #495057;">Report Summary</h3>
            <ul style="color: #6c757d;">
              <li>Period: {period}</li>
              <li>Format: PDF (A4)</li>
              <li>Generated: {date.today().isoformat()}</li>
            </ul>
          </div>
          <p>Best regards,<br>The Report Team</p>
          <hr style="border: none; border-top: 1px solid #dee2e6; margin: 30px 0;">
          <p style="font-size: 12px; color: #6c757d;">This is an automated report. Please do not reply to this email.</p>
        </div>
    """
    return {
        "sender": {"name": from_name, "email": from_email},
        "to": [{"email": email.to, "name": email.user_name}],
        "subject": f"Weekly Report - {period}",
        "htmlContent": html_content,
        "attachment": [{
            "content": base64.b64encode(email.pdf).decode("ascii"),
            "name": f"weekly-report-{email.period_start}-{email.period_end}.pdf",
            "type": "application/pdf",
        }],
    }


class BrevoEmailDispatcher:
    """
    Sends report emails through the Brevo transactional API.
    One blocking call per email, no retries; failures raise NotificationError.
    """

    def __init__(self, api_key: Optional[str] = None, api_url: str = settings.BREVO_API_URL,
                 from_email: str = settings.FROM_EMAIL, from_name: str = settings.FROM_NAME,
                 timeout: float = settings.EMAIL_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.api_url = api_url
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self.transport = transport

    async def send_report_email(self, email: ReportEmail) -> Optional[str]:
        if not self.api_key:
            raise NotificationError("BREVO_API_KEY is not configured")

        payload = build_email_payload(email, self.from_email, self.from_name)
        headers = {
            "accept": "application/json",
            "api-key": self.api_key,
            "content-type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_message(e.response)
            logger.error(f"Brevo API error: {e.response.status_code} - {detail}")
            raise NotificationError(f"Brevo API error: {e.response.status_code} - {detail}") from e
        except httpx.HTTPError as e:
            logger.error(f"failed to reach Brevo: {e}", exc_info=True)
            raise NotificationError(f"Failed to reach Brevo: {e}") from e

        message_id = response.json().get("messageId")
        logger.info(f"report email sent to {email.to} (message {message_id}, {len(email.pdf)} byte attachment)")
        return message_id


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message") or "Unknown error"
    except ValueError:
        return response.text[:200] or "Unknown error"

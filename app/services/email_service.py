"""
Email Service Module

Mail transport used by scheduled reports and notifications. Sends through
aiosmtplib and renders HTML bodies from the Jinja2 templates in app/templates.
"""

import logging
import mimetypes
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from pathlib import Path
from typing import Optional, Dict, Any, List, Protocol, Union

import aiosmtplib
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings
from app.core.storage import FileStorage, get_storage

logger = logging.getLogger(__name__)

# Template directory
TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

HIGH_PRIORITIES = ("high", "urgent")

# An attachment is either a storage key or {"filename", "content", "content_type"}
Attachment = Union[str, Dict[str, Any]]


class Mailer(Protocol):
    """Anything that can deliver an email the way EmailService does."""

    async def send_email(
        self,
        to: Union[str, List[str]],
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        priority: Optional[str] = None
    ) -> Dict[str, Any]:
        ...


_template_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(['html', 'xml'])
)


def render_template(template_name: str, context: Dict[str, Any]) -> str:
    """
    Render an HTML template with the given context.

    Args:
        template_name: Name of the template file
        context: Dictionary of template variables

    Returns:
        Rendered HTML string
    """
    try:
        template = _template_env.get_template(template_name)
        return template.render(app_name=settings.APP_NAME, **context)
    except Exception as e:
        logger.error(f"Error rendering template {template_name}: {str(e)}")
        raise


class EmailService:
    """SMTP mail transport. Never raises; returns a result dict."""

    def __init__(self, storage: Optional[FileStorage] = None):
        self.storage = storage

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        return render_template(template_name, context)

    async def _load_attachment(self, attachment: Attachment) -> MIMEApplication:
        if isinstance(attachment, str):
            storage = self.storage or get_storage()
            content = await storage.read(attachment)
            filename = Path(attachment).name
            content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        else:
            content = attachment["content"]
            filename = attachment["filename"]
            content_type = attachment.get("content_type") or "application/octet-stream"

        subtype = content_type.split("/", 1)[-1]
        part = MIMEApplication(content, _subtype=subtype)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        return part

    async def send_email(
        self,
        to: Union[str, List[str]],
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        priority: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send an email using async SMTP.

        Args:
            to: Recipient email address(es)
            subject: Email subject
            html_body: HTML body
            text_body: Optional plain text alternative
            attachments: Storage keys or in-memory attachment dicts
            priority: "high"/"urgent" mark the message as important

        Returns:
            Dictionary with 'success', 'message_id', and 'error'
        """
        if not settings.NOTIFICATION_ENABLED:
            logger.debug("Notifications are disabled")
            return {"success": False, "message_id": None, "error": "Notifications disabled"}

        if not settings.email_enabled:
            logger.warning("Email is not configured")
            return {"success": False, "message_id": None, "error": "Email not configured"}

        recipients = [to] if isinstance(to, str) else list(to)
        sender_email = settings.SMTP_FROM_EMAIL or settings.SMTP_USER
        sender_name = settings.SMTP_FROM_NAME

        message = MIMEMultipart("mixed")
        message["Subject"] = subject
        message["From"] = f"{sender_name} <{sender_email}>" if sender_name else sender_email
        message["To"] = ", ".join(recipients)
        message["Message-ID"] = make_msgid()

        if priority in HIGH_PRIORITIES:
            message["X-Priority"] = "1"
            message["Importance"] = "High"

        body = MIMEMultipart("alternative")
        if text_body:
            body.attach(MIMEText(text_body, "plain", "utf-8"))
        body.attach(MIMEText(html_body, "html", "utf-8"))
        message.attach(body)

        try:
            for attachment in attachments or []:
                message.attach(await self._load_attachment(attachment))

            smtp_kwargs = {
                "hostname": settings.SMTP_HOST,
                "port": settings.SMTP_PORT,
                "timeout": settings.SMTP_TIMEOUT,
            }

            if settings.SMTP_USE_SSL:
                smtp_kwargs["use_tls"] = True
            elif settings.SMTP_USE_TLS:
                smtp_kwargs["start_tls"] = True

            async with aiosmtplib.SMTP(**smtp_kwargs) as smtp:
                if settings.SMTP_USER and settings.SMTP_PASSWORD:
                    await smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD)

                await smtp.send_message(message, recipients=recipients)

            logger.info(f"Email sent successfully to {recipients}")
            return {
                "success": True,
                "message_id": message["Message-ID"],
                "error": None
            }

        except aiosmtplib.SMTPException as e:
            logger.error(f"SMTP error sending email: {str(e)}")
            return {
                "success": False,
                "message_id": None,
                "error": f"SMTP error: {str(e)}"
            }
        except Exception as e:
            logger.error(f"Error sending email: {str(e)}")
            return {
                "success": False,
                "message_id": None,
                "error": str(e)
            }


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from html import escape
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


# Subject line per template kind; {ticket_number} is filled from the data
EMAIL_SUBJECTS = {
    "create": "New Abnormal Finding Ticket Created - {ticket_number}",
    "accept": "Ticket Accepted - {ticket_number}",
    "reject": "Ticket Rejected - {ticket_number}",
    "plan": "Ticket Planned - {ticket_number}",
    "start": "Work Started - {ticket_number}",
    "finish": "Job Completed - {ticket_number}",
    "escalate": "Ticket Escalated - {ticket_number}",
    "approve_review": "Ticket Reviewed - {ticket_number}",
    "approve_close": "Ticket Closed - {ticket_number}",
    "reassign": "Ticket Reassigned - {ticket_number}",
    "reopen": "Ticket Reopened - {ticket_number}",
}


class EmailService:
    """Email service for sending ticket notifications via SMTP."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Abnormal Finding System",
        timeout: float = 5.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email over SMTP with STARTTLS.

        Args:
            to_email: Recipient email address
            subject: Email subject
            html_content: HTML body of the email
            text_content: Plain text body (optional fallback)

        Returns:
            True if email sent successfully, False otherwise
        """
        if not self.is_configured:
            logger.warning("Email not configured. SMTP credentials missing.")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info(f"Email sent successfully to {to_email}")
            return True

        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP Authentication failed. Check email credentials.")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error sending to {to_email}: {e}")
            return False
        except TimeoutError:
            logger.error(f"SMTP connection timed out sending to {to_email}")
            return False
        except OSError as e:
            logger.error(f"Network error sending email to {to_email}: {e}")
            return False

    # ==================== TICKET NOTIFICATIONS ====================

    def render_ticket_email(self, template_kind: str, data: Dict[str, Any]) -> tuple:
        """Build (subject, html, text) for a ticket notification."""
        subject_template = EMAIL_SUBJECTS.get(template_kind, "Ticket Status Updated - {ticket_number}")
        subject = subject_template.format(ticket_number=data.get("ticket_number", ""))

        rows = [
            ("Ticket", data.get("ticket_number")),
            ("Title", data.get("title")),
            ("Status", data.get("new_status")),
            ("Previous status", data.get("old_status")),
            ("Location", data.get("location")),
            ("By", data.get("actor_name")),
            ("Notes", data.get("notes")),
        ]
        rows = [(label, value) for label, value in rows if value]
        ticket_url = data.get("ticket_url")

        html_rows = "".join(
            f"<tr><td><strong>{escape(label)}</strong></td><td>{escape(str(value))}</td></tr>"
            for label, value in rows
        )
        link = f'<p><a href="{escape(ticket_url)}">Open ticket</a></p>' if ticket_url else ""
        html_content = f"""
        <!DOCTYPE html>
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>{escape(subject)}</h2>
            <p>Hello {escape(data.get("recipient_name") or "User")},</p>
            <p>{escape(data.get("reason") or "")}</p>
            <table>{html_rows}</table>
            {link}
            <p style="color: #666; font-size: 12px;">This is an automated message. Please do not reply.</p>
        </body>
        </html>
        """

        text_lines = [subject, ""] + [f"{label}: {value}" for label, value in rows]
        if ticket_url:
            text_lines += ["", ticket_url]
        return subject, html_content, "\n".join(text_lines)

    def send_ticket_email(self, to_email: str, template_kind: str, data: Dict[str, Any]) -> bool:
        subject, html_content, text_content = self.render_ticket_email(template_kind, data)
        return self.send_email(to_email, subject, html_content, text_content)


def get_email_service() -> EmailService:
    """Get configured email service instance."""
    from app.config import settings

    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
        timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
    )

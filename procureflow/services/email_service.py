"""Email notifications for escalated approval steps."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from flask import current_app
from flask_mail import Mail, Message

logger = logging.getLogger(__name__)


class EmailService:
    """Sends escalation notices to approval role holders."""

    def __init__(self, mail: Optional[Mail] = None):
        self.mail = mail

    def send_escalation_notice(self, recipients: Iterable[str], workflow, action, role_name: str = None) -> bool:
        """Tell the holders of an overdue step's role that it was escalated."""
        to = sorted({address for address in recipients if address})
        if not to:
            logger.info("No recipients for escalation of workflow %s step %s", workflow.id, action.sequence_order)
            return False
        subject = f"ProcureFlow - Approval overdue for {workflow.reference_code}"
        return self._send_email(
            recipients=to,
            subject=subject,
            html_body=self._get_escalation_html(workflow, action, role_name),
            text_body=self._get_escalation_text(workflow, action, role_name),
        )

    def _send_email(self, recipients: List[str], subject: str, html_body: str, text_body: str = None) -> bool:
        """Send email using Flask-Mail."""
        if not self.mail:
            logger.error("Mail service not initialized")
            return False
        msg = Message(
            subject=subject,
            sender=current_app.config.get("MAIL_DEFAULT_SENDER"),
            recipients=recipients,
        )
        if html_body:
            msg.html = html_body
        if text_body:
            msg.body = text_body
        try:
            self.mail.send(msg)
        except Exception as exc:
            logger.error("Failed to send email to %s: %s", ", ".join(recipients), exc)
            return False
        logger.info("Email sent successfully to %s", ", ".join(recipients))
        return True

    def _get_escalation_html(self, workflow, action, role_name: str = None) -> str:
        role = role_name or f"role #{action.approval_role_id}"
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="UTF-8">
            <title>ProcureFlow - Approval Escalated</title>
            <style>
                body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background-color: #f8f9fa; }}
                .container {{ max-width: 600px; margin: 0 auto; background-color: white; }}
                .header {{ background-color: #dc3545; color: white; padding: 24px; text-align: center; }}
                .content {{ padding: 32px 24px; }}
                .footer {{ background-color: #f8f9fa; padding: 16px; text-align: center; color: #6c757d; font-size: 14px; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="header"><h1>Approval escalated</h1></div>
                <div class="content">
                    <p>Step {action.sequence_order} ({role}) of <strong>{workflow.reference_code}</strong>
                    has been waiting longer than {workflow.escalation_hours} hours.</p>
                    <p>Amount: {workflow.amount} {workflow.currency}</p>
                    <p>Please review it in your pending approvals.</p>
                </div>
                <div class="footer">
                    <p>This is an automated message, please do not reply to this email.</p>
                </div>
            </div>
        </body>
        </html>
        """

    def _get_escalation_text(self, workflow, action, role_name: str = None) -> str:
        role = role_name or f"role #{action.approval_role_id}"
        text = f"""
ProcureFlow - Approval escalated

Step {action.sequence_order} ({role}) of {workflow.reference_code} has been waiting
longer than {workflow.escalation_hours} hours.

Amount: {workflow.amount} {workflow.currency}

Please review it in your pending approvals.

--
This is an automated message, please do not reply to this email.
        """
        return text.strip()


# Global email service instance
email_service = EmailService()


def init_email_service(mail: Mail) -> None:
    """Initialize the email service with Flask-Mail instance."""
    email_service.mail = mail


def send_escalation_notice(recipients, workflow, action, role_name: str = None) -> bool:
    return email_service.send_escalation_notice(recipients, workflow, action, role_name)

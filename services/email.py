import logging
import os
from typing import Dict, Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import settings
from models.order import Order
from tasks.email_tasks import send_email_task

logger = logging.getLogger(__name__)

# Queue through Celery outside of tests; the worker retries on SMTP failures
USE_CELERY = not settings.TESTING

# Jinja2 environment for email templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
)


def send_email(to_email: str, subject: str, body: str) -> None:
    """
    Send email using Celery if available, otherwise send directly.
    Payment handlers call this after the order is settled, so it must not raise.
    """
    if USE_CELERY:
        try:
            send_email_task.delay(to_email, subject, body)
            logger.debug("Email to %s queued to Celery", to_email)
            return
        except Exception as e:
            logger.warning("Celery not available, falling back to direct email sending: %s", e)

    _send_email_direct(to_email, subject, body)


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def send_templated_email(to_email: str, subject: str, template_path: str, context: Dict[str, Any]) -> None:
    body = render_template(template_path, context)
    send_email(to_email, subject, body)


def _order_context(order: Order) -> Dict[str, Any]:
    return {
        "full_name": order.user.full_name if order.user else "",
        "order_code": order.order_code,
        "course_title": order.course.title if order.course else order.order_code,
        "amount": order.paid_amount or order.final_price,
        "transaction_id": order.transaction_id or "",
    }


def send_payment_success_email(order: Order) -> None:
    if not order.user:
        return
    send_templated_email(
        order.user.email,
        f"Thanh toán thành công - {order.order_code}",
        "emails/payment_success.txt",
        _order_context(order),
    )


def send_payment_failed_email(order: Order, reason: str) -> None:
    if not order.user:
        return
    send_templated_email(
        order.user.email,
        f"Thanh toán không thành công - {order.order_code}",
        "emails/payment_failed.txt",
        {**_order_context(order), "reason": reason or "Thanh toán không thành công"},
    )


def send_refund_email(order: Order, amount: int, full_refund: bool) -> None:
    if not order.user:
        return
    send_templated_email(
        order.user.email,
        f"Hoàn tiền đơn hàng {order.order_code}",
        "emails/refund_processed.txt",
        {**_order_context(order), "amount": amount, "full_refund": full_refund},
    )


def _send_email_direct(to_email: str, subject: str, body: str) -> None:
    """Direct email sending fallback"""
    import smtplib
    from email.message import EmailMessage

    if not settings.SMTP_PASSWORD:
        logger.info("SMTP not configured; email to %s skipped (subject: %s)", to_email, subject)
        return

    try:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.SMTP_FROM or settings.SMTP_USERNAME
        msg["To"] = to_email
        msg.set_content(body)

        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as server:
            server.starttls()
            if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg)

        logger.info("Email sent to %s", to_email)
    except Exception:
        logger.exception("Email sending to %s failed", to_email)

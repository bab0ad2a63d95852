import asyncio
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import httpx

from app.core.config import settings
from app.core.errors import TransientDependencyError

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


@dataclass
class ReminderDelivery:
    email_sent: bool = False
    sms_sent: bool = False

    @property
    def delivered(self) -> bool:
        return self.email_sent or self.sms_sent


def _send_email_sync(to_email: str, subject: str, html_body: str) -> bool:
    """Send email via SMTP (blocking). Returns False when SMTP is not configured."""
    if not settings.email_enabled:
        logger.debug("Email disabled (SMTP not configured), skipping send")
        return False
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.from_name} <{settings.from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.from_email, [to_email], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        raise TransientDependencyError(f"SMTP delivery to {to_email} failed: {e}") from e
    logger.info("Email sent to %s", to_email)
    return True


def _deliver_email(to_email: str, subject: str, html_body: str) -> bool:
    try:
        return _send_email_sync(to_email, subject, html_body)
    except TransientDependencyError as e:
        logger.warning("%s", e.detail)
        return False


def _html_escape(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def _format_when(appointment_at: datetime) -> str:
    return appointment_at.strftime("%A, %B %d, %Y at %I:%M %p")


def _wrap_html(title: str, color: str, body: str) -> str:
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: {color};">{title}</h2>
  {body}
  <br>
  <p>Best regards,<br>{_html_escape(settings.site_name)} Team</p>
</div>
"""


def build_confirmation_html(patient_name: str, doctor_name: str, appointment_at: datetime) -> str:
    return _wrap_html(
        "Appointment Confirmed",
        "#10b981",
        f"""
  <p>Dear {_html_escape(patient_name)},</p>
  <p>Your appointment has been confirmed with <strong>Dr. {_html_escape(doctor_name)}</strong>.</p>
  <p><strong>Date &amp; Time:</strong> {_format_when(appointment_at)}</p>
  <p>Please arrive 10 minutes early for your appointment.</p>
""",
    )


def build_rejection_html(
    patient_name: str, doctor_name: str, appointment_at: datetime, reason: str | None
) -> str:
    reason_html = f"<p><strong>Reason:</strong> {_html_escape(reason)}</p>" if reason else ""
    return _wrap_html(
        "Appointment Request Declined",
        "#ef4444",
        f"""
  <p>Dear {_html_escape(patient_name)},</p>
  <p>Unfortunately, your appointment request with <strong>Dr. {_html_escape(doctor_name)}</strong>
     for {_format_when(appointment_at)} could not be confirmed.</p>
  {reason_html}
  <p>Please try booking another time slot or contact us for assistance.</p>
""",
    )


def build_reminder_html(patient_name: str, doctor_name: str, appointment_at: datetime) -> str:
    return _wrap_html(
        "Appointment Reminder",
        "#10b981",
        f"""
  <p>Dear {_html_escape(patient_name)},</p>
  <p>This is a reminder of your upcoming appointment with <strong>Dr. {_html_escape(doctor_name)}</strong>.</p>
  <p><strong>Date &amp; Time:</strong> {_format_when(appointment_at)}</p>
  <p>Please arrive 10 minutes early for your appointment.</p>
""",
    )


def send_appointment_confirmation_email(
    to_email: str, patient_name: str, doctor_name: str, appointment_at: datetime
) -> bool:
    """Compose and send approval/reschedule confirmation (call from background task)."""
    subject = f"Appointment Confirmation - {settings.site_name}"
    return _deliver_email(
        to_email, subject, build_confirmation_html(patient_name, doctor_name, appointment_at)
    )


def send_appointment_rejection_email(
    to_email: str,
    patient_name: str,
    doctor_name: str,
    appointment_at: datetime,
    reason: str | None = None,
) -> bool:
    subject = f"Appointment Request Update - {settings.site_name}"
    return _deliver_email(
        to_email,
        subject,
        build_rejection_html(patient_name, doctor_name, appointment_at, reason),
    )


def send_appointment_reminder_email(
    to_email: str, patient_name: str, doctor_name: str, appointment_at: datetime
) -> bool:
    subject = f"Appointment Reminder - {settings.site_name}"
    return _deliver_email(
        to_email, subject, build_reminder_html(patient_name, doctor_name, appointment_at)
    )


async def send_sms(to_phone: str, body: str) -> bool:
    """Send SMS via the Twilio Messages API. Returns False when Twilio is not configured."""
    if not settings.sms_enabled:
        logger.debug("SMS disabled (Twilio not configured), skipping send")
        return False
    if not to_phone.startswith("+"):
        logger.warning("Phone number not in E.164 format: %s", to_phone)
        return False
    sid = settings.twilio_account_sid
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                TWILIO_MESSAGES_URL.format(sid=sid),
                auth=(sid, settings.twilio_auth_token),
                data={"To": to_phone, "From": settings.twilio_from_number, "Body": body},
                timeout=10.0,
            )
    except httpx.HTTPError as e:
        raise TransientDependencyError(f"Twilio request to {to_phone} failed: {e}") from e
    if resp.status_code not in (200, 201):
        raise TransientDependencyError(
            f"Twilio API error for {to_phone}: status={resp.status_code} body={resp.text[:300]}"
        )
    logger.info("SMS sent to %s (sid=%s)", to_phone, resp.json().get("sid"))
    return True


def build_reminder_sms(patient_name: str, doctor_name: str, appointment_at: datetime) -> str:
    return (
        f"Reminder: Hi {patient_name}, you have an appointment with Dr. {doctor_name} "
        f"on {_format_when(appointment_at)}. See you soon! - {settings.site_name}"
    )


async def send_combined_reminder(
    email: str,
    phone: str | None,
    patient_name: str,
    doctor_name: str,
    appointment_at: datetime,
) -> ReminderDelivery:
    """Email always, SMS when a phone number is on file. Channel failures are logged, not raised."""
    delivery = ReminderDelivery()
    delivery.email_sent = await asyncio.to_thread(
        send_appointment_reminder_email, email, patient_name, doctor_name, appointment_at
    )
    if phone:
        try:
            delivery.sms_sent = await send_sms(
                phone, build_reminder_sms(patient_name, doctor_name, appointment_at)
            )
        except TransientDependencyError as e:
            logger.warning("%s", e.detail)
    return delivery

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

logger = logging.getLogger(__name__)

OTP_EMAIL_SUBJECT = "Password Reset OTP - Task Manager"

OTP_EMAIL_HTML = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #6b21a8;">Password Reset Request</h2>
  <p>You requested to reset your password for Task Manager.</p>
  <p>Your OTP code is:</p>
  <div style="background: #f3f4f6; padding: 20px; text-align: center; margin: 20px 0;">
    <h1 style="color: #6b21a8; font-size: 32px; letter-spacing: 5px; margin: 0;">{otp}</h1>
  </div>
  <p>This code will expire in {ttl_minutes} minutes.</p>
  <p>If you didn't request this, please ignore this email.</p>
</div>
"""


class Notifier(Protocol):
    def send_otp(self, email: str, otp: str) -> bool: ...


class ConsoleNotifier:
    """Development transport: the code only goes to the log."""

    def __init__(self, ttl_minutes: int = 10):
        self.ttl_minutes = ttl_minutes

    def send_otp(self, email: str, otp: str) -> bool:
        logger.info("OTP for %s: %s (expires in %d minutes)", email, otp, self.ttl_minutes)
        return True


class SmtpNotifier:
    def __init__(self, host: str, port: int, user: str, password: str, ttl_minutes: int = 10):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ttl_minutes = ttl_minutes

    def build_message(self, email: str, otp: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = OTP_EMAIL_SUBJECT
        msg["From"] = self.user
        msg["To"] = email
        msg.set_content(f"Your OTP code is {otp}. It expires in {self.ttl_minutes} minutes.")
        msg.add_alternative(OTP_EMAIL_HTML.format(otp=otp, ttl_minutes=self.ttl_minutes), subtype="html")
        return msg

    def send_otp(self, email: str, otp: str) -> bool:
        msg = self.build_message(email, otp)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Sending OTP email to %s failed: %s", email, e)
            return False
        logger.info("OTP email sent to %s", email)
        return True


def create_notifier(settings) -> Notifier:
    if settings.email_configured:
        logger.info("Email service configured (%s)", settings.email_host)
        return SmtpNotifier(
            settings.email_host,
            settings.email_port,
            settings.email_user,
            settings.email_pass,
            ttl_minutes=settings.otp_ttl_minutes,
        )
    logger.warning("Email not configured - OTP codes will be logged for development")
    return ConsoleNotifier(ttl_minutes=settings.otp_ttl_minutes)

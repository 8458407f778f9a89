"""
License email delivery over SMTP.

Port 465 speaks implicit TLS; any other port starts plain and upgrades with
STARTTLS unless that is switched off.
"""
import logging
import smtplib
import ssl
from datetime import datetime
from email.mime.text import MIMEText
from typing import Optional

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465

SUBJECT = "Your license key"

BODY = """Hello,

Thank you for keeping your subscription active. Here is your current license key (valid until {expiry} UTC):

{license_key}

Paste this key into the installer or the application's activation screen.

If you did not expect this email, please contact support immediately.
"""


class MailerError(Exception):
    """The license email could not be delivered."""


def format_expiry(expires_at: Optional[datetime]) -> str:
    if expires_at is None:
        return "never"
    return expires_at.strftime("%a, %d %b %Y %H:%M:%S")


class SmtpMailer:
    def __init__(self, host, port=IMPLICIT_TLS_PORT, username="", password="", sender="",
                 starttls=True, timeout=15.0):
        host = (host or "").strip()
        sender = (sender or "").strip()
        if not host:
            raise ValueError("mailer: host is required")
        if not sender:
            raise ValueError("mailer: from address is required")
        self.host = host
        self.port = port if port and port > 0 else IMPLICIT_TLS_PORT
        self.username = (username or "").strip()
        self.password = (password or "").strip()
        self.sender = sender
        self.starttls = starttls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        """None when mail is not configured."""
        if not (settings.SMTP_HOST and settings.SMTP_FROM):
            return None
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            sender=settings.SMTP_FROM,
            starttls=settings.SMTP_STARTTLS,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )

    def build_message(self, to: str, license_key: str, expires_at: Optional[datetime]) -> MIMEText:
        msg = MIMEText(BODY.format(expiry=format_expiry(expires_at), license_key=license_key), "plain", "utf-8")
        msg["Subject"] = SUBJECT
        msg["From"] = self.sender
        msg["To"] = to
        return msg

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.port == IMPLICIT_TLS_PORT:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.starttls:
            server.starttls(context=context)
        return server

    def send_license_email(self, to: str, license_key: str, expires_at: Optional[datetime]):
        to = (to or "").strip().lower()
        if not to:
            raise MailerError("recipient email is required")
        msg = self.build_message(to, license_key, expires_at)
        try:
            server = self._connect()
            try:
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, [to], msg.as_string())
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(f"smtp delivery to {self.host}:{self.port} failed: {e}") from e

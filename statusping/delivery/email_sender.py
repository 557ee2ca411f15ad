"""Send notification emails via SMTP."""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from statusping.config import EMAIL_FROM, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_TIMEOUT, SMTP_USERNAME
from statusping.models import SendResult

logger = logging.getLogger(__name__)

DEV_MODE_MESSAGE_ID = "dev-mode-skipped"


def is_email_configured() -> bool:
    """Return True when SMTP credentials are present."""
    return all([SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD])


def send_email(to_address: str, subject: str, html: str, text: str) -> SendResult:
    """Send one email with HTML and plain-text parts.

    Without SMTP credentials the message is only logged and reported as
    sent, so development environments run the full pipeline.
    Never raises for delivery problems; they are reported in the result.
    """
    if not is_email_configured():
        logger.info("SMTP not configured, skipping send to %s", to_address)
        logger.info("Subject: %s", subject)
        logger.info("Body:\n%s", text)
        return SendResult(success=True, message_id=DEV_MODE_MESSAGE_ID)

    message_id = make_msgid(domain=EMAIL_FROM.split("@")[-1])
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = EMAIL_FROM
    msg["To"] = to_address
    msg["Message-ID"] = message_id

    # Attach plain text first, then HTML (email clients prefer the last part)
    msg.attach(MIMEText(text, "plain", "utf-8"))
    msg.attach(MIMEText(html, "html", "utf-8"))

    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(SMTP_USERNAME, SMTP_PASSWORD)
            server.sendmail(EMAIL_FROM, to_address, msg.as_string())
        logger.info("Sent to %s: %s", to_address, subject)
        return SendResult(success=True, message_id=message_id)
    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        return SendResult(success=False, error="SMTP authentication failed: {}".format(e))
    except smtplib.SMTPException as e:
        logger.error("SMTP error sending to %s: %s", to_address, e)
        return SendResult(success=False, error="SMTP error: {}".format(e))
    except OSError as e:
        logger.error("Connection error sending to %s: %s", to_address, e)
        return SendResult(success=False, error="Connection error: {}".format(e))

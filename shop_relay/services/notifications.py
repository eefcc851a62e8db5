import os
import logging
from email.message import EmailMessage
from typing import Iterable
from dotenv import load_dotenv
import aiosmtplib

load_dotenv()

logger = logging.getLogger(__name__)

EMAIL_SERVICE = os.getenv("EMAIL_SERVICE", "console").lower()
MAIL_USERNAME = os.getenv("MAIL_USERNAME")
_raw_password = os.getenv("MAIL_PASSWORD")
MAIL_PASSWORD = None
if _raw_password is not None:
    cleaned = _raw_password.strip().strip('"').strip()
    # Gmail app passwords are displayed with spaces
    MAIL_PASSWORD = cleaned.replace(" ", "") if "gmail" in os.getenv("MAIL_SERVER", "").lower() else cleaned
MAIL_FROM = os.getenv("MAIL_FROM", MAIL_USERNAME)
MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "HopRelay Shopify")
RELAY_DASHBOARD_URL = os.getenv("RELAY_DASHBOARD_URL", "https://hoprelay.com/dashboard/auth")


async def send_email_html(subject: str, recipients: Iterable[str], html_body: str, plain_fallback: str | None = None) -> None:
    """
    Send an HTML email over SMTP.

    - STARTTLS on port 587, implicit TLS on port 465.
    - Needs MAIL_USERNAME, MAIL_PASSWORD; MAIL_FROM, MAIL_PORT, MAIL_SERVER are optional.
    """
    if not MAIL_USERNAME or not MAIL_PASSWORD:
        raise RuntimeError("MAIL_USERNAME/MAIL_PASSWORD are not configured")

    recipients = list(recipients)
    if not recipients:
        raise ValueError("recipients must not be empty")

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"{EMAIL_FROM_NAME} <{MAIL_FROM or MAIL_USERNAME}>"
    msg["To"] = ", ".join(recipients)
    msg.set_content(plain_fallback or "This message contains HTML content. Enable HTML in your mail client to view it.")
    msg.add_alternative(html_body, subtype="html")

    if MAIL_PORT == 465:
        await aiosmtplib.send(
            msg,
            hostname=MAIL_SERVER,
            port=MAIL_PORT,
            username=MAIL_USERNAME,
            password=MAIL_PASSWORD,
            use_tls=True,
        )
    else:
        await aiosmtplib.send(
            msg,
            hostname=MAIL_SERVER,
            port=MAIL_PORT,
            username=MAIL_USERNAME,
            password=MAIL_PASSWORD,
            start_tls=True,
        )


def _greeting(name: str | None) -> str:
    return f"Hello {name}!" if name else "Hello!"


async def send_verification_code(to: str, code: str, name: str | None = None) -> bool:
    """Email a verification code. Returns False instead of raising on failure."""
    if EMAIL_SERVICE == "console":
        logger.info(f"[console email] verification code for {to}: {code}")
        return True

    html = (
        f"<html>"
        f"<body style='font-family: Arial, sans-serif; text-align: center; margin: 0; padding: 40px;'>"
        f"<h1 style='font-size: 24px;'>{_greeting(name)}</h1>"
        f"<p style='font-size: 18px;'>Use this code to connect your Shopify store to HopRelay:</p>"
        f"<h2 style='font-size: 36px; letter-spacing: 8px; color: #4CAF50;'>{code}</h2>"
        f"<p style='font-size: 14px; color: #666;'>This code expires in 10 minutes.</p>"
        f"<p style='font-size: 14px; color: #666;'>If you did not request it, you can ignore this email.</p>"
        f"</body>"
        f"</html>"
    )
    text = f"{_greeting(name)}\n\nYour HopRelay verification code is {code}. It expires in 10 minutes."
    try:
        await send_email_html("Your HopRelay Verification Code", [to], html, text)
        return True
    except Exception as e:
        logger.error(f"Failed to send verification email to {to}: {e}")
        logger.warning(f"Verification code for {to}: {code}")
        return False


async def send_new_account_credentials(to: str, password: str, name: str | None = None) -> bool:
    """Email the generated password of a new relay account. Returns False on failure."""
    if EMAIL_SERVICE == "console":
        logger.info(f"[console email] new account credentials prepared for {to}")
        return True

    html = (
        f"<html>"
        f"<body style='font-family: Arial, sans-serif; margin: 0; padding: 40px;'>"
        f"<h1 style='font-size: 24px;'>Welcome to HopRelay!</h1>"
        f"<p>{_greeting(name)} Your HopRelay account has been created. Here are your login credentials:</p>"
        f"<p><strong>Email:</strong> {to}<br><strong>Password:</strong> {password}</p>"
        f"<p>Please store this password securely. You will need it to access the HopRelay dashboard.</p>"
        f"<a href='{RELAY_DASHBOARD_URL}'>Login to Dashboard</a>"
        f"</body>"
        f"</html>"
    )
    text = (
        f"Welcome to HopRelay!\n\nEmail: {to}\nPassword: {password}\n\n"
        f"Login to Dashboard: {RELAY_DASHBOARD_URL}"
    )
    try:
        await send_email_html("Welcome to HopRelay - Your Account Details", [to], html, text)
        return True
    except Exception as e:
        logger.error(f"Failed to send new account email to {to}: {e}")
        return False

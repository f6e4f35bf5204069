"""
Email templates for CoinQuest Academy.

Inline CSS only, so the messages render the same in every mail client.
Each template function returns (subject, html_body, text_body).
"""

from __future__ import annotations

from html import escape

# Palette
BG_PAGE = "#F4F7FB"
BG_CARD = "#FFFFFF"
GOLD = "#F5B301"
INK = "#1F2937"
MUTED = "#6B7280"
BORDER = "#E5E7EB"

APP_NAME = "CoinQuest Academy"


def _base_layout(content: str) -> str:
    """Wrap content in the shared card layout."""
    return f"""\
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{APP_NAME}</title>
</head>
<body style="margin: 0; padding: 0; background-color: {BG_PAGE}; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;">
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color: {BG_PAGE};">
        <tr>
            <td align="center" style="padding: 32px 16px;">
                <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="560" style="max-width: 560px; width: 100%;">
                    <tr>
                        <td align="center" style="padding-bottom: 24px;">
                            <span style="font-size: 22px; font-weight: 700; color: {INK};">{APP_NAME}</span>
                        </td>
                    </tr>
                    <tr>
                        <td style="background-color: {BG_CARD}; border: 1px solid {BORDER}; border-radius: 12px; padding: 32px;">
                            {content}
                        </td>
                    </tr>
                    <tr>
                        <td align="center" style="padding-top: 24px;">
                            <p style="color: {MUTED}; font-size: 12px; line-height: 1.5; margin: 0;">
                                You received this email because someone used this address on {APP_NAME}.<br>
                                If that wasn't you, you can ignore it.
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>"""


def _greeting(name: str | None) -> str:
    return f"Hi {name}," if name else "Hi there,"


def otp_code(name: str | None, code: str, flow: str, ttl_minutes: int) -> tuple[str, str, str]:
    """One-time verification code for signup or login."""
    if flow == "signup":
        subject = f"Your {APP_NAME} verification code"
        intro = "Welcome aboard! Enter this code to finish creating your account:"
    else:
        subject = f"Your {APP_NAME} login code"
        intro = "Enter this code to finish logging in:"

    greeting = _greeting(name)
    content = f"""\
<p style="color: {INK}; font-size: 16px; margin: 0 0 16px;">{escape(greeting)}</p>
<p style="color: {INK}; font-size: 15px; line-height: 1.6; margin: 0 0 24px;">{intro}</p>
<p style="text-align: center; margin: 0 0 24px;">
    <span style="display: inline-block; padding: 12px 24px; background-color: {BG_PAGE}; border: 2px solid {GOLD}; border-radius: 8px; font-size: 28px; font-weight: 700; letter-spacing: 6px; color: {INK};">{code}</span>
</p>
<p style="color: {MUTED}; font-size: 13px; margin: 0;">The code expires in {ttl_minutes} minutes.</p>"""

    text = f"""\
{greeting}

{intro}

    {code}

The code expires in {ttl_minutes} minutes.

If you didn't request this, you can ignore this email.
"""
    return subject, _base_layout(content), text


def password_reset(name: str | None, reset_url: str, ttl_minutes: int) -> tuple[str, str, str]:
    """Password reset link."""
    subject = f"Reset your {APP_NAME} password"
    greeting = _greeting(name)
    content = f"""\
<p style="color: {INK}; font-size: 16px; margin: 0 0 16px;">{escape(greeting)}</p>
<p style="color: {INK}; font-size: 15px; line-height: 1.6; margin: 0 0 24px;">
    We received a request to reset your password. Use the button below to pick a new one.
</p>
<p style="text-align: center; margin: 0 0 24px;">
    <a href="{reset_url}" target="_blank" style="display: inline-block; padding: 12px 28px; background-color: {GOLD}; border-radius: 8px; color: {INK}; font-size: 15px; font-weight: 600; text-decoration: none;">Reset password</a>
</p>
<p style="color: {MUTED}; font-size: 13px; margin: 0;">This link expires in {ttl_minutes} minutes and can be used once.</p>"""

    text = f"""\
{greeting}

We received a request to reset your password. Open this link to pick a new one:

{reset_url}

This link expires in {ttl_minutes} minutes and can be used once.
"""
    return subject, _base_layout(content), text


def password_changed(name: str | None) -> tuple[str, str, str]:
    """Notification sent after a password change or reset."""
    subject = f"Your {APP_NAME} password was changed"
    greeting = _greeting(name)
    content = f"""\
<p style="color: {INK}; font-size: 16px; margin: 0 0 16px;">{escape(greeting)}</p>
<p style="color: {INK}; font-size: 15px; line-height: 1.6; margin: 0;">
    Your password was just changed. If you did this, no action is needed.
    If you didn't, reset your password right away.
</p>"""

    text = f"""\
{greeting}

Your password was just changed. If you did this, no action is needed.
If you didn't, reset your password right away.
"""
    return subject, _base_layout(content), text

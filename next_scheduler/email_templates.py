"""
MJML Email Templates
All email templates using MJML for responsive, cross-client compatibility
"""

from html import escape
from typing import Optional

# App theme colors - Blue/Slate color scheme
THEME = {
    "primary": "#2563eb",
    "primary_dark": "#1e40af",
    "primary_light": "#eff6ff",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "warning": "#f59e0b",
    "warning_bg": "#fef3c7",
}


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section background-color="#ffffff" padding="0 40px 32px 40px">
          <mj-column>
            <mj-button
              href="{escape(cta_url, quote=True)}"
              background-color="{THEME['primary']}"
              color="#ffffff"
              font-weight="600"
              border-radius="8px"
              padding="18px 40px"
              font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <!-- Header -->
        <mj-section background-color="#ffffff" padding="32px 20px 0 20px">
          <mj-column>
            <mj-text align="center" font-size="28px" font-weight="700" color="{THEME['primary']}">
              Next Scheduler
            </mj-text>
            <mj-divider border-color="{THEME['primary']}" border-width="2px" />
          </mj-column>
        </mj-section>

        <!-- Main Content -->
        <mj-section background-color="#ffffff" padding="0 40px 24px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" padding="0 0 16px 0">
              {title}
            </mj-text>

            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <!-- Footer -->
        <mj-section padding="24px 20px">
          <mj-column>
            <mj-text align="center" font-size="12px" color="{THEME['text_muted']}">
              This email was sent by Next Scheduler. Please do not reply to this email.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def appointment_confirmation_template(
    buyer_name: str,
    seller_name: str,
    formatted_datetime: str,
    service: str,
    meet_link: Optional[str] = None,
    personal_message: Optional[str] = None,
) -> str:
    """
    Confirmation sent to the buyer once a booking is committed.

    personal_message carries AI-composed text; without it the static
    greeting is used.
    """
    if personal_message:
        paragraphs = [p.strip() for p in personal_message.split("\n\n") if p.strip()]
        message_sections = "".join(
            f'<mj-text padding="0 0 16px 0">{escape(p).replace(chr(10), "<br />")}</mj-text>'
            for p in paragraphs
        )
    else:
        message_sections = f"""
            <mj-text padding="0 0 16px 0">Dear <strong>{escape(buyer_name)}</strong>,</mj-text>
            <mj-text padding="0 0 16px 0">
              Thank you for booking a <strong>{escape(service)}</strong> with me. I'm looking forward to our meeting!
            </mj-text>
        """

    meet_link_row = ""
    if meet_link:
        meet_link_row = f"""
              <tr>
                <td style="padding: 8px 0; font-weight: 600; color: {THEME['text_muted']};">Meeting Link:</td>
                <td style="padding: 8px 0;"><a href="{escape(meet_link, quote=True)}" style="color: {THEME['primary']};">{escape(meet_link)}</a></td>
              </tr>
        """

    content = f"""
            {message_sections}
            <mj-table padding="16px 0" container-background-color="{THEME['background']}">
              <tr>
                <td style="padding: 8px 0; font-weight: 600; color: {THEME['text_muted']}; width: 130px;">Date &amp; Time:</td>
                <td style="padding: 8px 0;">{escape(formatted_datetime)}</td>
              </tr>
              <tr>
                <td style="padding: 8px 0; font-weight: 600; color: {THEME['text_muted']};">Service:</td>
                <td style="padding: 8px 0;">{escape(service)}</td>
              </tr>
              {meet_link_row}
            </mj-table>
            <mj-text padding="16px 0" container-background-color="{THEME['warning_bg']}" color="#92400e" font-size="14px">
              <strong>Reminder:</strong> Please join the meeting a few minutes early to ensure everything works smoothly.
            </mj-text>
            <mj-text padding="16px 0 0 0">Best regards,<br /><strong>{escape(seller_name)}</strong><br />via Next Scheduler</mj-text>
    """

    return get_base_template(
        title="Appointment Confirmed",
        preview_text=f"Your {service} with {seller_name} is confirmed",
        content_sections=content,
        cta_url=meet_link,
        cta_label="Join Meeting" if meet_link else None,
    )

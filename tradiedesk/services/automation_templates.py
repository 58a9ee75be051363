"""Pre-built automation templates for common trade workflows.

The catalog is a module-level constant. Every lookup parses a fresh
``AutomationTemplate`` so callers can never mutate the shared entries.
"""

from typing import Any

from tradiedesk.schemas.automation import AutomationTemplate


_AUTOMATION_TEMPLATE_LIBRARY: list[dict[str, Any]] = [
    # Quote follow-ups
    {
        "id": "quote-follow-up-3-days",
        "name": "Quote Follow-up (3 Days)",
        "description": "Send a friendly follow-up email 3 days after sending a quote",
        "category": "quote",
        "trigger": {"type": "no_response", "entityType": "quote", "delayDays": 3},
        "actions": [
            {"type": "send_email", "template": "quote_follow_up"},
            {"type": "notification", "message": "Quote follow-up sent to {client_name}"},
        ],
        "email_subject": "Following up on your quote - {quote_number}",
        "email_body": (
            "G'day {client_name},\n"
            "\n"
            "Just wanted to follow up on the quote I sent through a few days ago.\n"
            "\n"
            "If you have any questions or would like to discuss the quote further, I'm happy to chat.\n"
            "\n"
            "Quote Details:\n"
            "- Quote Number: {quote_number}\n"
            "- Total: {quote_total} (inc. GST)\n"
            "\n"
            "Let me know if there's anything I can help with.\n"
            "\n"
            "Cheers,\n"
            "{business_name}"
        ),
        "popular": True,
    },
    {
        "id": "quote-sms-follow-up",
        "name": "Quote SMS Follow-up",
        "description": "Quick SMS follow-up 5 days after a quote was sent",
        "category": "quote",
        "trigger": {"type": "no_response", "entityType": "quote", "delayDays": 5},
        "actions": [
            {
                "type": "send_sms",
                "message": (
                    "Hi {client_name}, just checking in on quote {quote_number} for {quote_total}. "
                    "Any questions? - {business_name}"
                ),
            },
            {"type": "notification", "message": "Quote SMS follow-up sent to {client_name}"},
        ],
        "sms_body": (
            "Hi {client_name}, just checking in on quote {quote_number} for {quote_total}. "
            "Any questions? - {business_name}"
        ),
    },
    {
        "id": "quote-follow-up-7-days",
        "name": "Quote Follow-up (7 Days)",
        "description": "Send a second follow-up 7 days after the quote was sent",
        "category": "quote",
        "trigger": {"type": "no_response", "entityType": "quote", "delayDays": 7},
        "actions": [
            {"type": "send_email", "template": "quote_follow_up_2"},
            {"type": "notification", "message": "Second quote follow-up sent to {client_name}"},
        ],
        "email_subject": "Just checking in - Quote {quote_number}",
        "email_body": (
            "Hi {client_name},\n"
            "\n"
            "I wanted to check in about the quote I sent through last week.\n"
            "\n"
            "Is there anything holding you back or any questions I can answer? "
            "I'm happy to make adjustments if needed.\n"
            "\n"
            "Quote Number: {quote_number}\n"
            "Total: {quote_total}\n"
            "\n"
            "Looking forward to hearing from you.\n"
            "\n"
            "Regards,\n"
            "{business_name}"
        ),
    },
    {
        "id": "quote-accepted-confirmation",
        "name": "Quote Accepted Confirmation",
        "description": "Send confirmation and create a job when a quote is accepted",
        "category": "quote",
        "trigger": {
            "type": "status_change",
            "entityType": "quote",
            "fromStatus": "sent",
            "toStatus": "accepted",
        },
        "actions": [
            {"type": "send_email", "template": "quote_accepted"},
            {"type": "create_job"},
            {"type": "notification", "message": "Quote {quote_number} accepted by {client_name}"},
        ],
        "email_subject": "Thanks! Quote {quote_number} Accepted",
        "email_body": (
            "G'day {client_name},\n"
            "\n"
            "Thanks for accepting the quote! I'll be in touch shortly to schedule the work.\n"
            "\n"
            "Quote Number: {quote_number}\n"
            "Total: {quote_total}\n"
            "\n"
            "Looking forward to getting started.\n"
            "\n"
            "Cheers,\n"
            "{business_name}"
        ),
        "popular": True,
    },
    # Invoice reminders
    {
        "id": "invoice-reminder-7-days",
        "name": "Invoice Reminder (7 Days Overdue)",
        "description": "Send a gentle reminder 7 days after the invoice due date",
        "category": "invoice",
        "trigger": {"type": "time_delay", "entityType": "invoice", "delayDays": 7},
        "actions": [
            {"type": "send_email", "template": "invoice_reminder"},
            {"type": "update_status", "newStatus": "overdue"},
            {"type": "notification", "message": "Invoice reminder sent to {client_name}"},
        ],
        "email_subject": "Payment Reminder - Invoice {invoice_number}",
        "email_body": (
            "Hi {client_name},\n"
            "\n"
            "Just a friendly reminder that invoice {invoice_number} is now overdue.\n"
            "\n"
            "Invoice Details:\n"
            "- Invoice Number: {invoice_number}\n"
            "- Amount Due: {invoice_total}\n"
            "\n"
            "If you've already paid, no worries - just ignore this email.\n"
            "\n"
            "If you have any questions, please get in touch.\n"
            "\n"
            "Thanks,\n"
            "{business_name}"
        ),
        "popular": True,
    },
    {
        "id": "invoice-sms-reminder",
        "name": "Invoice SMS Reminder",
        "description": "Quick SMS 10 days after the invoice due date",
        "category": "invoice",
        "trigger": {"type": "time_delay", "entityType": "invoice", "delayDays": 10},
        "actions": [
            {
                "type": "send_sms",
                "message": (
                    "Hi {client_name}, friendly reminder that invoice {invoice_number} ({invoice_total}) "
                    "is overdue. Please pay when you can. Thanks! - {business_name}"
                ),
            },
            {"type": "notification", "message": "Invoice SMS reminder sent to {client_name}"},
        ],
        "sms_body": (
            "Hi {client_name}, friendly reminder that invoice {invoice_number} ({invoice_total}) "
            "is overdue. Please pay when you can. Thanks! - {business_name}"
        ),
    },
    {
        "id": "invoice-reminder-14-days",
        "name": "Invoice Reminder (14 Days Overdue)",
        "description": "Send a firmer email and SMS reminder 14 days after the due date",
        "category": "invoice",
        "trigger": {"type": "time_delay", "entityType": "invoice", "delayDays": 14},
        "actions": [
            {"type": "send_email", "template": "invoice_reminder_2"},
            {
                "type": "send_sms",
                "message": (
                    "Hi {client_name}, invoice {invoice_number} for {invoice_total} is now 2 weeks overdue. "
                    "Please pay ASAP. Thanks - {business_name}"
                ),
            },
            {"type": "notification", "message": "Second invoice reminder sent to {client_name}"},
        ],
        "email_subject": "URGENT: Invoice {invoice_number} - Payment Required",
        "email_body": (
            "Hi {client_name},\n"
            "\n"
            "This is a reminder that invoice {invoice_number} is now 14 days overdue.\n"
            "\n"
            "Please arrange payment as soon as possible to avoid any disruption to our service.\n"
            "\n"
            "Invoice Details:\n"
            "- Invoice Number: {invoice_number}\n"
            "- Amount Due: {invoice_total}\n"
            "- Days Overdue: 14\n"
            "\n"
            "If there's an issue with payment, please contact me to discuss.\n"
            "\n"
            "Regards,\n"
            "{business_name}"
        ),
    },
    # Payments
    {
        "id": "invoice-payment-received",
        "name": "Payment Thank You",
        "description": "Send a thank you email when payment is received",
        "category": "payment",
        "trigger": {"type": "payment_received", "entityType": "invoice"},
        "actions": [
            {"type": "send_email", "template": "payment_thanks"},
            {"type": "notification", "message": "Payment received from {client_name}"},
        ],
        "email_subject": "Payment Received - Thanks!",
        "email_body": (
            "G'day {client_name},\n"
            "\n"
            "Thanks for the payment! Invoice {invoice_number} is now marked as paid.\n"
            "\n"
            "Amount Received: {invoice_total}\n"
            "\n"
            "Really appreciate your business. Looking forward to working with you again.\n"
            "\n"
            "Cheers,\n"
            "{business_name}"
        ),
        "popular": True,
    },
    # Jobs
    {
        "id": "job-scheduled-reminder",
        "name": "Job Reminder (Day Before)",
        "description": "Remind the client about their scheduled job the day before",
        "category": "job",
        # Negative delay = days before the scheduled date.
        "trigger": {"type": "time_delay", "entityType": "job", "delayDays": -1},
        "actions": [
            {"type": "send_email", "template": "job_reminder"},
            {
                "type": "send_sms",
                "message": (
                    "Hi {client_name}, just a reminder I'll be there tomorrow for {job_title}. "
                    "See you then! - {business_name}"
                ),
            },
            {"type": "notification", "message": "Job reminder sent to {client_name}"},
        ],
        "email_subject": "Reminder: Appointment Tomorrow - {job_title}",
        "email_body": (
            "G'day {client_name},\n"
            "\n"
            "Just a quick reminder that I'll be at your place tomorrow for the following job:\n"
            "\n"
            "Job: {job_title}\n"
            "Address: {job_address}\n"
            "Date: {scheduled_date}\n"
            "\n"
            "If you need to reschedule, please let me know ASAP.\n"
            "\n"
            "See you tomorrow!\n"
            "{business_name}"
        ),
        "popular": True,
    },
    {
        "id": "job-started-notification",
        "name": "Job Started Notification",
        "description": "Text the client when work begins",
        "category": "job",
        "trigger": {
            "type": "status_change",
            "entityType": "job",
            "fromStatus": "scheduled",
            "toStatus": "in_progress",
        },
        "actions": [
            {
                "type": "send_sms",
                "message": (
                    "Hi {client_name}, I've just started work on {job_title}. "
                    "I'll let you know when it's done. - {business_name}"
                ),
            },
            {"type": "notification", "message": "Job started notification sent to {client_name}"},
        ],
        "sms_body": (
            "Hi {client_name}, I've just started work on {job_title}. "
            "I'll let you know when it's done. - {business_name}"
        ),
    },
    {
        "id": "job-completed-followup",
        "name": "Job Completed Follow-up",
        "description": "Send a follow-up email after the job is marked as done",
        "category": "job",
        "trigger": {
            "type": "status_change",
            "entityType": "job",
            "fromStatus": "in_progress",
            "toStatus": "done",
        },
        "actions": [
            {"type": "send_email", "template": "job_completed"},
            {"type": "notification", "message": "Job completion email sent to {client_name}"},
        ],
        "email_subject": "Job Completed - {job_title}",
        "email_body": (
            "G'day {client_name},\n"
            "\n"
            "Just to let you know the job is all done!\n"
            "\n"
            "Job: {job_title}\n"
            "Address: {job_address}\n"
            "\n"
            "If you notice any issues, please get in touch and I'll sort it out.\n"
            "\n"
            "Thanks for your business - I really appreciate it. "
            "If you were happy with the work, I'd love a review on Google!\n"
            "\n"
            "Cheers,\n"
            "{business_name}"
        ),
    },
    {
        "id": "job-completed-draft-invoice",
        "name": "Draft Invoice on Completion",
        "description": "Create a draft invoice as soon as a job is marked as done",
        "category": "job",
        "trigger": {"type": "status_change", "entityType": "job", "toStatus": "done"},
        "actions": [
            {"type": "create_invoice"},
            {"type": "notification", "message": "Draft invoice created for {job_title}"},
        ],
    },
    {
        "id": "job-overdue-alert",
        "name": "Overdue Job Alert",
        "description": "Alert yourself when a scheduled job is still open a day after its date",
        "category": "job",
        "trigger": {"type": "time_delay", "entityType": "job", "delayDays": 1},
        "actions": [
            {"type": "notification", "message": "{job_title} for {client_name} is past its scheduled date"},
        ],
    },
]

# Built-in content used when a send_email action has no catalog template.
DEFAULT_EMAIL_CONTENT: dict[str, tuple[str, str]] = {
    "quote": (
        "Following up on your quote - {quote_number}",
        "G'day {client_name},\n"
        "\n"
        "Just checking in on the quote I sent through. Let me know if you have any questions.\n"
        "\n"
        "Cheers,\n"
        "{business_name}",
    ),
    "invoice": (
        "Payment Reminder - Invoice {invoice_number}",
        "Hi {client_name},\n"
        "\n"
        "This is a friendly reminder about invoice {invoice_number}.\n"
        "\n"
        "Amount Due: {invoice_total}\n"
        "\n"
        "Please arrange payment at your earliest convenience.\n"
        "\n"
        "Thanks,\n"
        "{business_name}",
    ),
    "job": (
        "Job Update - {job_title}",
        "G'day {client_name},\n"
        "\n"
        "Just a quick update on your job: {job_title}.\n"
        "\n"
        "Cheers,\n"
        "{business_name}",
    ),
}


def get_all_templates() -> list[AutomationTemplate]:
    return [AutomationTemplate.model_validate(item) for item in _AUTOMATION_TEMPLATE_LIBRARY]


def get_templates_by_category(category: str) -> list[AutomationTemplate]:
    normalized = (category or "").strip().lower()
    return [template for template in get_all_templates() if template.category == normalized]


def get_popular_templates() -> list[AutomationTemplate]:
    return [template for template in get_all_templates() if template.popular]


def get_template_by_id(template_id: str | None) -> AutomationTemplate | None:
    normalized = (template_id or "").strip().lower()
    if not normalized:
        return None
    for item in _AUTOMATION_TEMPLATE_LIBRARY:
        if item["id"] == normalized:
            return AutomationTemplate.model_validate(item)
    return None


def get_template_by_email_key(email_key: str | None) -> AutomationTemplate | None:
    """Find the catalog entry whose send_email action uses ``email_key``."""
    normalized = (email_key or "").strip().lower()
    if not normalized:
        return None
    for item in _AUTOMATION_TEMPLATE_LIBRARY:
        for action in item["actions"]:
            if action["type"] == "send_email" and action.get("template") == normalized:
                return AutomationTemplate.model_validate(item)
    return None


def template_to_automation(template: AutomationTemplate, user_id: str) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "name": template.name,
        "description": template.description,
        "is_active": True,
        "template_id": template.id,
        "trigger": template.trigger.to_storage(),
        "actions": [action.to_storage() for action in template.actions],
    }

import re
from typing import Any, Mapping

from tradiedesk.core.config import settings
from tradiedesk.core.dates import format_au_date
from tradiedesk.core.money import format_money


_TOKEN_RE = re.compile(r"{([a-z_]+)}")


def entity_value(entity: Any, *names: str) -> Any:
    """First non-empty attribute (or mapping key) of ``entity`` among ``names``."""
    if entity is None:
        return None
    for name in names:
        if isinstance(entity, Mapping):
            value = entity.get(name)
        else:
            value = getattr(entity, name, None)
        if value is not None and value != "":
            return value
    return None


def _text(entity: Any, *names: str) -> str:
    value = entity_value(entity, *names)
    return "" if value is None else str(value)


def build_variable_values(
    context: Mapping[str, Any] | None,
    client: Any,
    business_name: str | None,
) -> dict[str, str]:
    if not isinstance(context, Mapping):
        context = {}
    quote = context.get("quote")
    invoice = context.get("invoice")
    job = context.get("job")
    return {
        "business_name": business_name or settings.automation_business_name_fallback,
        "client_name": _text(client, "name") or "there",
        "client_email": _text(client, "email"),
        "quote_number": _text(quote, "number", "quote_number"),
        "quote_total": format_money(entity_value(quote, "total")),
        "invoice_number": _text(invoice, "number", "invoice_number"),
        "invoice_total": format_money(entity_value(invoice, "total")),
        "job_title": _text(job, "title"),
        "job_address": _text(job, "site_address", "address"),
        "scheduled_date": format_au_date(entity_value(job, "scheduled_at")),
    }


def replace_variables(
    template: str | None,
    context: Mapping[str, Any] | None,
    client: Any,
    business_name: str | None = None,
) -> str:
    if not template:
        return ""
    values = build_variable_values(context, client, business_name)

    def _replace(match: re.Match[str]) -> str:
        return values.get(match.group(1), match.group(0))

    return _TOKEN_RE.sub(_replace, str(template))

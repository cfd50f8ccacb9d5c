"""Proforma document builder.

Produces the ``/invoices/add`` body and the payment-schedule line printed
in the proforma description. Amounts are gross with VAT 0 ("nie podl.").
"""

from __future__ import annotations

from datetime import date, timedelta

from src.app.invoices.schemas import ProformaProduct
from src.app.payments.schedule import parse_date, shift_months
from src.app.services.wfirma import BankAccount, build_api_document, to_xml

ADVANCE_PERCENT = 50
PAYMENT_TERMS_DAYS = 3
DEFAULT_LANGUAGE = "en"
VAT_RATE = 0
VAT_CODE_ID = 230
VAT_EXEMPTION_REASON = "nie podl."
PAYMENT_METHOD = "transfer"


def _fmt(amount: float) -> str:
    return f"{amount:.2f}"


def balance_due_date(expected_close: str | date | None, issue_date: date) -> date | None:
    """Expected close minus one month, only when that is after the issue date."""
    close = parse_date(expected_close)
    if close is None:
        return None
    due = shift_months(close, -1)
    return due if due > issue_date else None


def schedule_description(
    total: float,
    currency: str,
    payment_date: date,
    balance_date: date | None,
) -> str:
    if balance_date is not None and balance_date != payment_date:
        deposit = round(total * ADVANCE_PERCENT / 100, 2)
        balance = round(total - deposit, 2)
        return (
            f"График платежей: 50% предоплата ({_fmt(deposit)} {currency}) оплачивается сейчас; "
            f"50% остаток ({_fmt(balance)} {currency}) до {balance_date.isoformat()}."
        )
    return f"График платежей: 100% оплата ({_fmt(total)} {currency}) до {payment_date.isoformat()}."


def build_proforma_xml(
    contractor_id: str,
    product: ProformaProduct,
    amount: float,
    currency: str,
    bank_account: BankAccount,
    expected_close: str | date | None = None,
    issue_date: date | None = None,
) -> str:
    issue_date = issue_date or date.today()
    payment_date = issue_date + timedelta(days=PAYMENT_TERMS_DAYS)
    description = schedule_description(
        amount, currency, payment_date, balance_due_date(expected_close, issue_date)
    )
    quantity = product.quantity or 1

    document = build_api_document(
        "invoices",
        "invoice",
        {
            "type": "proforma",
            "issue_date": issue_date.isoformat(),
            "payment_date": payment_date.isoformat(),
            "payment_type": PAYMENT_METHOD,
            "language": DEFAULT_LANGUAGE,
            "currency": currency,
            "company_account_id": bank_account.id,
            "description": description,
            "vat_exemption_reason": VAT_EXEMPTION_REASON,
            "contractor": {"id": contractor_id},
            "invoicecontents": [
                {
                    "invoicecontent": {
                        "name": product.name,
                        "count": _quantity(quantity),
                        "unit_count": _quantity(quantity),
                        "price": amount,
                        "is_net": "false",
                        "brutto": amount,
                        "unit": product.unit or "szt.",
                        "vat_code_id": VAT_CODE_ID,
                        "vat_rate": VAT_RATE,
                    }
                }
            ],
        },
    )
    return to_xml(document)


def _quantity(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)

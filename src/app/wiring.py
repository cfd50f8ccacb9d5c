"""Builds the integration clients and services shared by the API, scheduler and scripts.

Integrations whose credentials are missing come back as None (their client
constructors raise ValueError); every dependent service is then None too,
and callers answer with 503 or skip the job.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from src.app.analytics.baseline import SendpulseBaseline
from src.app.analytics.expenses import MarketingExpenseClient
from src.app.analytics.pipedrive_mql import PipedriveMqlClient
from src.app.analytics.report import MqlReportService
from src.app.analytics.repository import MqlRepository
from src.app.analytics.sendpulse_mql import SendpulseMqlClient
from src.app.analytics.sync import MqlSyncService
from src.app.config import Settings, get_settings
from src.app.core.database import get_session
from src.app.core.redis import JobLock, get_job_lock
from src.app.invoices.bank_accounts import BankAccountResolver
from src.app.invoices.processing import InvoiceProcessingService
from src.app.invoices.repository import ProformaRepository
from src.app.payments.analyzer import PaymentStateAnalyzer
from src.app.payments.repository import StripePaymentRepository
from src.app.payments.sessions import PaymentSessionCreator
from src.app.reminders.meet import GoogleMeetReminderService
from src.app.reminders.proforma import ProformaSecondPaymentReminderService
from src.app.reminders.repository import ReminderTaskRepository
from src.app.services.exchange_rates import ExchangeRateClient
from src.app.services.gsuite.calendar import GoogleCalendarService
from src.app.services.pipedrive import PipedriveClient
from src.app.services.sendpulse import SendPulseClient
from src.app.services.wfirma import WfirmaClient

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _optional(name: str, factory: Callable[[], T]) -> T | None:
    try:
        return factory()
    except ValueError as exc:
        logger.warning("wiring.integration_disabled", integration=name, reason=str(exc))
        return None


@dataclass
class OpsServices:
    settings: Settings
    pipedrive: PipedriveClient
    sendpulse: SendPulseClient | None
    wfirma: WfirmaClient | None
    calendar: GoogleCalendarService | None
    job_lock: JobLock | None
    mql_repository: MqlRepository
    proforma_repository: ProformaRepository
    reminder_repository: ReminderTaskRepository
    stripe_repository: StripePaymentRepository
    mql_sync: MqlSyncService
    mql_report: MqlReportService
    meet_reminders: GoogleMeetReminderService | None
    proforma_reminders: ProformaSecondPaymentReminderService | None
    invoices: InvoiceProcessingService | None
    payment_sessions: PaymentSessionCreator | None
    payment_analyzer: PaymentStateAnalyzer


def build_services(
    settings: Settings | None = None,
    session_factory: Callable = get_session,
    job_lock: JobLock | None = None,
) -> OpsServices:
    settings = settings or get_settings()
    if job_lock is None:
        job_lock = get_job_lock()

    pipedrive = PipedriveClient(settings.PIPEDRIVE_API_TOKEN, settings.PIPEDRIVE_BASE_URL)
    sendpulse = _optional(
        "sendpulse",
        lambda: SendPulseClient(
            settings.SENDPULSE_CLIENT_ID,
            settings.SENDPULSE_CLIENT_SECRET,
            settings.SENDPULSE_BASE_URL,
        ),
    )
    wfirma = _optional(
        "wfirma",
        lambda: WfirmaClient(
            settings.WFIRMA_APP_KEY,
            settings.WFIRMA_ACCESS_KEY,
            settings.WFIRMA_SECRET_KEY,
            settings.WFIRMA_COMPANY_ID,
            settings.WFIRMA_BASE_URL,
        ),
    )
    calendar = _optional(
        "google_calendar",
        lambda: GoogleCalendarService(
            settings.GOOGLE_CLIENT_ID,
            settings.GOOGLE_CLIENT_SECRET,
            settings.GOOGLE_REFRESH_TOKEN,
            calendar_id=settings.GOOGLE_CALENDAR_ID,
            timezone=settings.GOOGLE_TIMEZONE,
            internal_domains=settings.google_internal_domains,
        ),
    )

    mql_repository = MqlRepository(session_factory)
    proforma_repository = ProformaRepository(session_factory)
    reminder_repository = ReminderTaskRepository(session_factory)
    stripe_repository = StripePaymentRepository(session_factory)

    baseline = SendpulseBaseline.load(settings.MQL_BASELINE_FILE)
    sendpulse_mql = None
    if sendpulse is not None:
        sendpulse_mql = _optional(
            "sendpulse_mql",
            lambda: SendpulseMqlClient(
                sendpulse,
                settings.SENDPULSE_INSTAGRAM_BOT_ID,
                tag=settings.SENDPULSE_MQL_TAG,
                page_size=settings.SENDPULSE_CONTACTS_PAGE_SIZE,
            ),
        )

    mql_sync = MqlSyncService(
        repository=mql_repository,
        sendpulse_client=sendpulse_mql,
        pipedrive_client=PipedriveMqlClient.from_settings(pipedrive, settings),
        expense_client=MarketingExpenseClient(
            session_factory,
            settings.mql_marketing_category_ids,
            ExchangeRateClient(),
        ),
        baseline=baseline,
    )
    mql_report = MqlReportService(mql_repository, baseline, sendpulse_mql)

    meet_reminders = None
    if calendar is not None:
        meet_reminders = GoogleMeetReminderService(
            calendar=calendar,
            pipedrive=pipedrive,
            sendpulse=sendpulse,
            repository=reminder_repository,
            sendpulse_id_field=settings.PIPEDRIVE_SENDPULSE_ID_FIELD_KEY,
        )

    invoices = None
    proforma_reminders = None
    if wfirma is not None:
        bank_accounts = BankAccountResolver(
            wfirma,
            settings.wfirma_bank_account_names,
            settings.WFIRMA_FALLBACK_BANK_ACCOUNT_ID,
        )
        invoices = InvoiceProcessingService(
            pipedrive=pipedrive,
            wfirma=wfirma,
            bank_accounts=bank_accounts,
            proformas=proforma_repository,
            invoice_type_field=settings.PIPEDRIVE_INVOICE_TYPE_FIELD_KEY,
        )
        proforma_reminders = ProformaSecondPaymentReminderService(
            pipedrive=pipedrive,
            sendpulse=sendpulse,
            proformas=proforma_repository,
            bank_accounts=bank_accounts,
            sendpulse_id_field=settings.PIPEDRIVE_SENDPULSE_ID_FIELD_KEY,
        )

    payment_sessions = _optional(
        "stripe",
        lambda: PaymentSessionCreator(
            pipedrive=pipedrive,
            repository=stripe_repository,
            job_lock=job_lock,
            api_key=settings.STRIPE_API_KEY,
            success_url=settings.STRIPE_CHECKOUT_SUCCESS_URL,
            cancel_url=settings.STRIPE_CHECKOUT_CANCEL_URL,
        ),
    )

    return OpsServices(
        settings=settings,
        pipedrive=pipedrive,
        sendpulse=sendpulse,
        wfirma=wfirma,
        calendar=calendar,
        job_lock=job_lock,
        mql_repository=mql_repository,
        proforma_repository=proforma_repository,
        reminder_repository=reminder_repository,
        stripe_repository=stripe_repository,
        mql_sync=mql_sync,
        mql_report=mql_report,
        meet_reminders=meet_reminders,
        proforma_reminders=proforma_reminders,
        invoices=invoices,
        payment_sessions=payment_sessions,
        payment_analyzer=PaymentStateAnalyzer(stripe_repository),
    )

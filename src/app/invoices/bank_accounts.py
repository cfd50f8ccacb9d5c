"""Selects the wFirma company bank account printed on a proforma.

Lookup order for a currency: exact configured name, then a partial match on
the first word of that name, then an accepted account in the currency, then
any account in the currency, then the configured fallback id.

The account list is cached until refresh(), which the invoice and reminder
batches call at the start of each run.
"""

from __future__ import annotations

import structlog

from src.app.services.wfirma import BankAccount, WfirmaClient

logger = structlog.get_logger(__name__)


class BankAccountResolver:
    """Args:
        wfirma: wFirma client.
        account_names: Currency code -> expected wFirma account name.
        fallback_account_id: Account id used when nothing matches.
    """

    def __init__(
        self,
        wfirma: WfirmaClient,
        account_names: dict[str, str],
        fallback_account_id: str = "",
    ) -> None:
        self._wfirma = wfirma
        self._account_names = {k.upper(): v for k, v in account_names.items()}
        self._fallback_account_id = fallback_account_id
        self._accounts: list[BankAccount] | None = None

    @property
    def supported_currencies(self) -> list[str]:
        return sorted(self._account_names)

    def is_supported(self, currency: str | None) -> bool:
        return (currency or "").upper() in self._account_names

    def refresh(self) -> None:
        """Drop the cached account list; the next lookup reloads it from wFirma."""
        self._accounts = None

    async def _load(self) -> list[BankAccount]:
        if self._accounts is None:
            self._accounts = await self._wfirma.get_bank_accounts()
            logger.info("bank_accounts.cached", count=len(self._accounts))
        return self._accounts

    async def get_for_currency(self, currency: str) -> BankAccount | None:
        """Account for a currency, or None when the currency is not configured."""
        code = (currency or "").upper()
        name = self._account_names.get(code)
        if name is None:
            return None

        accounts = await self._load()
        first_word = name.split(" ")[0]
        for match in (
            lambda acc: acc.name == name,
            lambda acc: first_word in acc.name,
            lambda acc: acc.currency == code and acc.accepted,
            lambda acc: acc.currency == code,
        ):
            found = next((acc for acc in accounts if match(acc)), None)
            if found is not None:
                return found

        logger.warning("bank_accounts.using_fallback", currency=code, fallback_id=self._fallback_account_id)
        return BankAccount(id=self._fallback_account_id, name=name, currency=code)

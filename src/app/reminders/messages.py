"""Client-facing reminder texts (Russian; the audience is Russian-speaking)."""

from __future__ import annotations

from src.app.reminders.schemas import ContactType, ProformaReminderTask, ReminderType

SMS_30_MIN = "Привет это COMOON у нас с тобой звонок через час. Ссылка на почте."
SMS_5_MIN = "Через 5 мин: {link}"
TELEGRAM_30_MIN = SMS_30_MIN + "\n\n🔗 Ссылка на встречу: {link}"
TELEGRAM_5_MIN = "Встреча через 5 минут!\n\nСсылка: {link}\n\nДо встречи осталось 5 минут. Ждем вас!"


def meet_reminder_text(contact_type: ContactType, reminder_type: ReminderType, link: str) -> str:
    # SMS stays short and emoji-free; the 30min SMS points to the email invite.
    if contact_type == ContactType.SMS:
        if reminder_type == ReminderType.THIRTY_MIN:
            return SMS_30_MIN
        return SMS_5_MIN.format(link=link)
    if reminder_type == ReminderType.THIRTY_MIN:
        return TELEGRAM_30_MIN.format(link=link)
    return TELEGRAM_5_MIN.format(link=link)


def proforma_reminder_text(task: ProformaReminderTask) -> str:
    return (
        "🔔 Напоминание о втором платеже\n\n"
        f"Здравствуйте, {task.customer_name or 'Клиент'}!\n\n"
        f'Напоминаем об оплате второго платежа по сделке "{task.deal_title or ""}".\n\n'
        f"💰 Сумма: {task.second_payment_amount:.2f} {task.currency}\n"
        f"📋 Проформа: {task.proforma_number}\n"
        f"🏦 Счет: {task.bank_account_number or 'N/A'}\n\n"
        f'💡 Укажите "{task.proforma_number}" в назначении платежа.'
    )

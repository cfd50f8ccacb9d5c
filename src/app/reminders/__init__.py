"""Client reminders -- Google Meet call reminders and proforma second-payment nudges.

Reminders are delivered through SendPulse: Telegram when the Pipedrive
person carries a SendPulse id, SMS otherwise.
"""

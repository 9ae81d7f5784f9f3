"""Outbound notification channel"""

from recordsync.errors import NotifierError
from recordsync.notify.telegram_notifier import Notifier, TelegramNotifier

__all__ = ["Notifier", "NotifierError", "TelegramNotifier"]

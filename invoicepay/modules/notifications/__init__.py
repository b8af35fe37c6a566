from .service import PaymentNotifier, LiveEventBroadcaster, NotificationResult, get_payment_notifier

__all__ = ["PaymentNotifier", "LiveEventBroadcaster", "NotificationResult", "get_payment_notifier"]

# tasks/__init__.py
from tasks.payment_monitor import PaymentMonitor

__all__ = ["PaymentMonitor"]

"""Background workers for async processing."""
from .outbox_publisher import start_outbox_publisher
from .payment_expiry_worker import run_expiry_sweep, start_payment_expiry_worker

__all__ = ["run_expiry_sweep", "start_outbox_publisher", "start_payment_expiry_worker"]

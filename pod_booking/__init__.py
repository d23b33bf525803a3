"""Pod booking service: pod lifecycle, reservations and VNPay settlement."""

__version__ = "1.0.0"

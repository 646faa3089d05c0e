"""
Campaign Delivery Service

Delivery control engine for newsletter campaigns providing:
- Frozen, hash-verified content snapshots with monotonic versions
- Per-recipient delivery ledger with at-most-once claims
- Pause, resume, cancel and emergency stop
- Retry and dead-letter handling with exponential backoff
- Delivery statistics and scheduled-campaign sweeps

Port: 8250
"""

__version__ = "1.0.0"
__service__ = "campaign_delivery_service"

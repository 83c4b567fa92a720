"""
Group-Buy Service

B2B group-buying microservice providing:
- Campaign lifecycle (draft, publish, grace period, lock, cancel, complete)
- Quantity-tiered discount bracket pricing
- Buyer pledges with display and lock-eligibility totals
- Bounded-retry payment collection
- Scheduled drivers for time-based transitions

Port: 8260
"""

__version__ = "1.0.0"
__service__ = "group_buy_service"

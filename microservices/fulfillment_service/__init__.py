"""
Fulfillment Service

Campaign fulfillment engine for the vendor incentive platform.

Features:
- Permanent tier assignment of validated submissions with spillover
- Objective progress, displayed submissions and campaign boards
- Settlement of completed tiers with special-event multipliers
- Vendor and store rankings by credited value
- Event-driven intake of validation outcomes
"""

__version__ = "1.0.0"

"""
Default loyalty settings per tenant.

Stored under Tenant.settings['loyalty']; anything missing falls back to these.
"""

DEFAULT_LOYALTY_SETTINGS = {
    # Master switch: when False every purchase/refund event short-circuits
    'loyalty_enabled': True,
    # Scan completed orders for applied reward discounts and redeem automatically
    'auto_detect_redemptions': True,
    # Discount cap when neither purchase history nor catalog price is known.
    # None means "use DEFAULT_MAX_DISCOUNT_CENTS from config".
    'default_max_discount_cents': None,
    # Window the catch-up job scans for missed orders. None means config default.
    'catchup_hours_back': None,
}

SETTING_TYPES = {
    'loyalty_enabled': bool,
    'auto_detect_redemptions': bool,
    'default_max_discount_cents': int,
    'catchup_hours_back': int,
}

"""Coupon redemption counters."""

from .ledger import CouponAvailability, CouponLedger, CouponRedemption

__all__ = ["CouponAvailability", "CouponLedger", "CouponRedemption"]

"""HTTP surface of the Coupon Claim Service."""

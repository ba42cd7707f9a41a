"""
Booking correlation package.

Stores a booking submission under its order number so the payment
callback can find it again, tolerating the order number formats that
payment providers echo back.
"""

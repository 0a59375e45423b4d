"""
                Group Ordering Service

Shared table orders: a host opens a group order, diners join through an
invite code, add their own items under optional spending limits and the
table settles under one payment structure at checkout.

Version: 1.0.0
"""

__version__ = "1.0.0"

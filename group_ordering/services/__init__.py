"""
                        Services Module

Business logic behind the API.

Services:
    - group_order: sessions, invite codes, spending limits and settlement
    - payment: Stripe charges with a Mock twin for development
"""

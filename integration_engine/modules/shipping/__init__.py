"""
Shipping Module v1.0.0

Courier adapters behind a single BaseCourierProvider interface,
registered by provider id.
"""

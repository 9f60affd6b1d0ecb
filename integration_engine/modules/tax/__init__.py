"""
Tax Module v1.0.0

Tax calculation adapters behind a single BaseTaxProvider interface,
registered by provider id.
"""

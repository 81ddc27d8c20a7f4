"""
Policy engine service package.

Evaluates a tenant's invoice policies (validation, approval, routing,
fraud) against an e-invoice document and applies the resulting actions.
"""

"""
WhatSend

WhatsApp order notifications for storefront tenants: per-tenant device
sessions, a durable delivery queue, quota billing and data erasure.
"""

__version__ = "1.0.0"

"""
WhatSend Services

Billing, startup reconciliation, erasure and retention.
"""

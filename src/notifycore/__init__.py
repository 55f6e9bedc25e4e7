"""
notifycore

Shared infrastructure for the WhatSend services: settings, logging,
database sessions and the Redis client.
"""
